"""Linear subsystems solved exactly at every evaluation.

Algebraic loops that are linear in their unknowns are isolated by the
equation sorter into blocks ``A·x = b``. The coefficients are not
extracted symbolically. Instead, the residual ``r(x) = A·x - b`` of the
block is probed at ``x = 0`` (giving ``-b``) and at each unit vector
(giving the columns of ``A``), and the system is solved directly.
"""

import logging
from typing import Callable, Optional

import numpy as np
from scipy import linalg

from eqsim.equation_info import LinearSubsystemInfo
from eqsim.errors import SingularSystemError

logger = logging.getLogger(__name__)

# Matrices with a larger condition number are treated as singular
MAX_CONDITION = 1.0 / np.finfo(float).eps


class LinearSubsystem:
    """Storage and solver for one linear subsystem.

    Parameters
    ----------
    info : LinearSubsystemInfo
        Structure of the block (unknowns, steps, residuals).
    representation : FloatRepresentation
        Numeric representation the block is evaluated with. Float
        blocks are solved with LAPACK, object blocks (ufloats) by
        Gaussian elimination with partial pivoting.

    Attributes
    ----------
    A : ndarray, shape (n, n)
    b : ndarray, shape (n,)
    x : ndarray, shape (n,)
        Solution of the last solve.
    """

    def __init__(self, info: LinearSubsystemInfo, representation):
        self.info = info
        self.representation = representation
        self.n = info.n
        self.A = np.zeros((self.n, self.n), dtype=representation.dtype)
        self.b = representation.zeros(self.n)
        self.x = representation.zeros(self.n)
        self.constant_matrix = info.constant_matrix and representation.is_float
        self._lu = None
        self.n_solves = 0
        self.n_factorizations = 0

    def assemble(
        self, residual: Callable[[np.ndarray], np.ndarray], initial: bool = False
    ) -> None:
        """Compute ``A`` and ``b`` by probing the residual function.

        Parameters
        ----------
        residual : callable
            ``residual(x) -> r`` with ``r = A·x - b``.
        initial : bool
            True on the initial evaluation. A constant matrix is only
            re-assembled (and re-factorised) then.
        """
        if initial:
            self._lu = None
        zero = self.representation.zeros(self.n)
        r0 = residual(zero)
        self.b[:] = -r0
        if self.constant_matrix and self._lu is not None:
            return
        for j in range(self.n):
            e_j = self.representation.zeros(self.n)
            e_j[j] = 1.0
            self.A[:, j] = residual(e_j) - r0

    def solve(
        self, A: Optional[np.ndarray] = None, b: Optional[np.ndarray] = None
    ) -> np.ndarray:
        """Solve ``A·x = b`` and store the solution in ``self.x``.

        Parameters
        ----------
        A, b : ndarray, optional
            Coefficients and right-hand side. Default to the assembled
            ``self.A`` and ``self.b``.

        Returns
        -------
        x : ndarray

        Raises
        ------
        SingularSystemError
            If the matrix is singular or not finite.
        """
        if A is not None:
            self.A[:, :] = A
            self._lu = None
        if b is not None:
            self.b[:] = b
        self.n_solves += 1

        if not self.representation.is_float:
            self.x[:] = _eliminate(self.A, self.b, self.representation.nominal)
            return self.x

        if not (np.all(np.isfinite(self.A)) and np.all(np.isfinite(self.b))):
            raise SingularSystemError(
                f"Linear subsystem for {', '.join(self.info.unknowns)} has "
                "non-finite coefficients"
            )
        if self.constant_matrix:
            if self._lu is None:
                self._check_condition()
                self._lu = linalg.lu_factor(self.A)
                self.n_factorizations += 1
                logger.debug("Factorised constant matrix of %r", self)
            self.x[:] = linalg.lu_solve(self._lu, self.b)
        else:
            self._check_condition()
            try:
                self.x[:] = np.linalg.solve(self.A, self.b)
            except np.linalg.LinAlgError as exc:
                raise SingularSystemError(
                    f"Linear subsystem for {', '.join(self.info.unknowns)}: {exc}"
                ) from exc
        return self.x

    def _check_condition(self):
        if self.n == 0:
            return
        # Evaluators run under np.errstate(raise); a singular A is reported below
        with np.errstate(divide="ignore", invalid="ignore"):
            cond = np.linalg.cond(self.A)
        if not np.isfinite(cond) or cond > MAX_CONDITION:
            raise SingularSystemError(
                f"Linear subsystem for {', '.join(self.info.unknowns)} is "
                f"singular (condition number {cond:.3g})"
            )

    def __repr__(self):
        return (
            f"LinearSubsystem(unknowns={self.info.unknowns}, n={self.n}, "
            f"n_solves={self.n_solves})"
        )


def _eliminate(A: np.ndarray, b: np.ndarray, nominal: Callable) -> np.ndarray:
    """Gaussian elimination with partial pivoting for object arrays."""
    n = len(b)
    A = A.copy()
    b = b.copy()
    scale = max((abs(nominal(a)) for a in A.flat), default=0.0)
    tol = n * np.finfo(float).eps * scale
    for k in range(n):
        pivot = max(range(k, n), key=lambda i: abs(nominal(A[i, k])))
        if scale == 0.0 or abs(nominal(A[pivot, k])) <= tol:
            raise SingularSystemError(
                f"Singular linear subsystem (zero pivot in column {k})"
            )
        if pivot != k:
            A[[k, pivot]] = A[[pivot, k]]
            b[[k, pivot]] = b[[pivot, k]]
        for i in range(k + 1, n):
            factor = A[i, k] / A[k, k]
            A[i, k:] = A[i, k:] - factor * A[k, k:]
            b[i] = b[i] - factor * b[k]

    x = np.empty(n, dtype=object)
    for i in range(n - 1, -1, -1):
        known = sum(A[i, j] * x[j] for j in range(i + 1, n))
        x[i] = (b[i] - known) / A[i, i]
    return x
