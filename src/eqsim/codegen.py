"""Generation of the derivative evaluator from reduced equations.

The equation sorter delivers the reduced model as an ordered list of
Python ``ast`` statements (assignments, plus ``solve_linear_subsystem(i)``
markers for linear subsystems), together with the :class:`EquationInfo`
and the ordered parameter and variable names. From these an
:class:`EvaluationPlan` is built once: a fixed sequence of operations

    unpack states -> compute / solve linear subsystem ... -> pack derivatives

with every variable name resolved to a slot of a flat frame. The plan is
then compiled into nested closures for one numeric representation (see
:mod:`eqsim.representations`). Recompiling the same plan for another
representation gives evaluators over units, uncertainties or dual
numbers without touching the equations.

The resulting :class:`DerivativeEvaluator` has the signature

    evaluator(der_x, x, model, time, mode=EvaluationMode.DERIVATIVES)

and is used as the right-hand side of the integrator.

Examples
--------
>>> import ast
>>> info = EquationInfo(states=[StateInfo("x", "der_x")])
>>> equations = ast.parse("der_x = -a*x")
>>> evaluator = generate_get_derivatives(
...     equations, info, parameters=["a"], variables=["time", "x", "der_x"]
... )
"""

import ast
import logging
import operator
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from eqsim import events
from eqsim.core import EvaluationMode
from eqsim.equation_info import EquationInfo, LinearSubsystemInfo, StateInfo
from eqsim.errors import ConfigurationError, EvaluationError, SimulationError
from eqsim.linear import LinearSubsystem
from eqsim.representations import FloatRepresentation, UnitRepresentation

logger = logging.getLogger(__name__)

LINEAR_SUBSYSTEM_CALL = "solve_linear_subsystem"

CROSSING_HOOKS = {
    "positive": events.positive,
    "negative": events.negative,
    "crossing": events.crossing,
}

CONSTANTS = {"pi": np.pi, "inf": np.inf}

BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.MatMult: operator.matmul,
}

UNARY_OPERATORS = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

COMPARISONS = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
}

# Reserved frame slots
MODEL, X, DER_X, MODE, SUBSYSTEMS = range(5)
N_RESERVED = 5


# ============================================================================
# Plan operations
# ============================================================================


@dataclass
class UnpackStates:
    """Copy state slots of ``x`` into named locals."""

    states: List[StateInfo]

    def describe(self) -> List[str]:
        lines = []
        for s in self.states:
            index = (
                f"{s.start_index}"
                if s.is_scalar
                else f"{s.start_index}:{s.start_index + s.length}"
            )
            unit = f" [{s.unit}]" if s.unit else ""
            lines.append(f"{s.name} = x[{index}]{unit}")
        return lines


@dataclass
class Compute:
    """One assignment of the reduced equations."""

    statement: ast.stmt

    @property
    def source(self) -> str:
        return ast.unparse(self.statement)

    def describe(self) -> List[str]:
        return [self.source]


@dataclass
class SolveLinearSubsystem:
    """Solve linear subsystem ``index`` for its unknowns."""

    index: int
    info: LinearSubsystemInfo
    steps: List[Compute]

    def describe(self) -> List[str]:
        lines = [
            f"solve linear subsystem {self.index} for "
            f"{', '.join(self.info.unknowns)}:"
        ]
        lines.extend(f"    {step.source}" for step in self.steps)
        lines.extend(
            f"    0 = {ast.unparse(residual)}" for residual in self.info.residuals
        )
        return lines


@dataclass
class PackDerivatives:
    """Copy named derivative locals into ``der_x``."""

    states: List[StateInfo]
    dummy: bool = False

    def describe(self) -> List[str]:
        if self.dummy:
            return ["der_x[0] = -x[0]"]
        lines = []
        for s in self.states:
            index = (
                f"{s.start_index}"
                if s.is_scalar
                else f"{s.start_index}:{s.start_index + s.length}"
            )
            lines.append(f"der_x[{index}] = {s.der_name}")
        return lines


@dataclass
class EvaluationPlan:
    """Ordered operations of a derivative evaluator with resolved slots."""

    equation_info: EquationInfo
    parameter_names: List[str]
    variable_names: List[str]
    has_units: bool
    slots: Dict[str, int]
    operations: list

    @property
    def n_slots(self) -> int:
        return N_RESERVED + len(self.slots)

    def describe(self) -> str:
        lines = [f"{self.variable_names[0]} = time"]
        lines.extend(
            f"{name} = p[{i}]" for i, name in enumerate(self.parameter_names)
        )
        for op in self.operations:
            lines.extend(op.describe())
        return "\n".join(lines)


def _assigned_names(statement: ast.stmt) -> List[str]:
    if not isinstance(statement, ast.Assign):
        return []
    names = []
    for target in statement.targets:
        if isinstance(target, ast.Name):
            names.append(target.id)
        elif isinstance(target, (ast.Tuple, ast.List)):
            names.extend(e.id for e in target.elts if isinstance(e, ast.Name))
    return names


def _linear_subsystem_index(statement: ast.stmt) -> Optional[int]:
    if not (
        isinstance(statement, ast.Expr)
        and isinstance(statement.value, ast.Call)
        and isinstance(statement.value.func, ast.Name)
        and statement.value.func.id == LINEAR_SUBSYSTEM_CALL
    ):
        return None
    args = statement.value.args
    if len(args) != 1 or not isinstance(args[0], ast.Constant):
        raise ConfigurationError(
            f"{LINEAR_SUBSYSTEM_CALL} takes one constant index, got "
            f"'{ast.unparse(statement)}'"
        )
    return int(args[0].value)


def compile_plan(
    equations: Union[ast.Module, Iterable[ast.stmt]],
    equation_info: EquationInfo,
    parameters: Sequence[str],
    variables: Sequence[str],
    has_units: bool = False,
) -> EvaluationPlan:
    """Build the evaluation plan of a reduced equation set.

    Parameters
    ----------
    equations : ast.Module or iterable of ast.stmt
        Reduced equations in evaluation order. Each statement is an
        assignment or a ``solve_linear_subsystem(i)`` marker.
    equation_info : EquationInfo
        State layout and linear subsystems. Start indices are assigned.
    parameters : sequence of str
        Parameter names in the order of the model's parameter vector.
    variables : sequence of str
        Recorded variable names. The first one is time.
    has_units : bool, optional
        True if states carry the units declared in ``equation_info``.

    Returns
    -------
    plan : EvaluationPlan

    Raises
    ------
    ConfigurationError
        If a statement is not supported or a recorded variable or state
        derivative is never computed.
    """
    if isinstance(equations, ast.Module):
        equations = equations.body
    equations = list(equations)
    parameters = [str(p) for p in parameters]
    variables = [str(v) for v in variables]
    if not variables:
        raise ConfigurationError("variables must start with the time variable")

    equation_info.assign_start_indices()
    algebraic = equation_info.is_algebraic
    states = [] if algebraic else list(equation_info.states)

    operations: list = []
    if states:
        operations.append(UnpackStates(states))

    known = [variables[0], *parameters, *(s.name for s in states)]
    computed: List[str] = []
    for statement in equations:
        index = _linear_subsystem_index(statement)
        if index is not None:
            try:
                info = equation_info.linear_subsystems[index]
            except IndexError:
                raise ConfigurationError(
                    f"Unknown linear subsystem {index}"
                ) from None
            steps = [Compute(s) for s in info.steps]
            for step in steps:
                computed.extend(_assigned_names(step.statement))
            computed.extend(info.unknowns)
            operations.append(SolveLinearSubsystem(index, info, steps))
        elif isinstance(statement, ast.Assign):
            computed.extend(_assigned_names(statement))
            operations.append(Compute(statement))
        else:
            raise ConfigurationError(
                "Equation steps must be assignments or "
                f"{LINEAR_SUBSYSTEM_CALL}(i), got '{ast.unparse(statement)}'"
            )

    operations.append(PackDerivatives(states, dummy=algebraic))

    defined = set(known) | set(computed)
    missing = [s.der_name for s in states if s.der_name not in defined]
    missing += [v for v in variables if v not in defined]
    if missing:
        raise ConfigurationError(
            f"Variables are never computed: {', '.join(dict.fromkeys(missing))}"
        )

    slots: Dict[str, int] = {}
    for name in [*known, *computed, *(s.der_name for s in states), *variables]:
        if name not in slots:
            slots[name] = N_RESERVED + len(slots)

    return EvaluationPlan(
        equation_info=equation_info,
        parameter_names=parameters,
        variable_names=variables,
        has_units=has_units,
        slots=slots,
        operations=operations,
    )


# ============================================================================
# Compilation of a plan into closures
# ============================================================================


def _guard(step: Callable, source: str) -> Callable:
    def guarded(frame):
        try:
            return step(frame)
        except SimulationError:
            raise
        except (ArithmeticError, ValueError, TypeError, IndexError) as exc:
            raise EvaluationError(f"Evaluation of '{source}' failed: {exc}") from exc

    return guarded


def _direction(node: ast.expr) -> events.CrossingDirection:
    if isinstance(node, ast.Name):
        key = node.id
    elif isinstance(node, ast.Attribute):
        key = node.attr
    elif isinstance(node, ast.Constant):
        key = node.value
    else:
        key = None
    if isinstance(key, str) and key.upper() in events.CrossingDirection.__members__:
        return events.CrossingDirection[key.upper()]
    if isinstance(key, int):
        return events.CrossingDirection(key)
    raise ConfigurationError(f"Invalid crossing direction '{ast.unparse(node)}'")


class _Compiler:
    """Turns the AST of a plan into closures over a flat frame."""

    def __init__(self, plan: EvaluationPlan, representation):
        self.plan = plan
        self.slots = plan.slots
        self.rep = representation
        self.parameters = set(plan.parameter_names)
        self.derivatives = plan.equation_info.derivative_names()

    def expression(self, node: ast.expr) -> Callable:
        method = getattr(self, "_" + type(node).__name__, None)
        if method is None:
            raise ConfigurationError(
                f"Unsupported expression '{ast.unparse(node)}'"
            )
        return method(node)

    def _Constant(self, node):
        value = node.value
        return lambda frame: value

    def _Name(self, node):
        slot = self.slots.get(node.id)
        if slot is not None:
            return operator.itemgetter(slot)
        if node.id in CONSTANTS:
            value = CONSTANTS[node.id]
            return lambda frame: value
        raise ConfigurationError(f"Unknown variable {node.id!r}")

    def _BinOp(self, node):
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ConfigurationError(f"Unsupported operator in '{ast.unparse(node)}'")
        left = self.expression(node.left)
        right = self.expression(node.right)
        return lambda frame: op(left(frame), right(frame))

    def _UnaryOp(self, node):
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ConfigurationError(f"Unsupported operator in '{ast.unparse(node)}'")
        operand = self.expression(node.operand)
        return lambda frame: op(operand(frame))

    def _BoolOp(self, node):
        values = [self.expression(v) for v in node.values]
        is_and = isinstance(node.op, ast.And)

        def evaluate(frame):
            result = None
            for value in values:
                result = value(frame)
                if bool(result) is not is_and:
                    return result
            return result

        return evaluate

    def _Compare(self, node):
        left = self.expression(node.left)
        pairs = []
        for op, comparator in zip(node.ops, node.comparators):
            if type(op) not in COMPARISONS:
                raise ConfigurationError(
                    f"Unsupported comparison in '{ast.unparse(node)}'"
                )
            pairs.append((COMPARISONS[type(op)], self.expression(comparator)))

        def evaluate(frame):
            a = left(frame)
            for op, comparator in pairs:
                b = comparator(frame)
                if not op(a, b):
                    return False
                a = b
            return True

        return evaluate

    def _IfExp(self, node):
        test = self.expression(node.test)
        body = self.expression(node.body)
        orelse = self.expression(node.orelse)
        return lambda frame: body(frame) if test(frame) else orelse(frame)

    def _Tuple(self, node):
        items = [self.expression(e) for e in node.elts]
        vector = self.rep.vector
        return lambda frame: vector([item(frame) for item in items])

    _List = _Tuple

    def _Subscript(self, node):
        value = self.expression(node.value)
        index = self.expression(node.slice)
        return lambda frame: value(frame)[index(frame)]

    def _Slice(self, node):
        parts = [
            self.expression(p) if p is not None else (lambda frame: None)
            for p in (node.lower, node.upper, node.step)
        ]
        return lambda frame: slice(*(p(frame) for p in parts))

    def _Call(self, node):
        if not isinstance(node.func, ast.Name) or node.keywords:
            raise ConfigurationError(f"Unsupported call '{ast.unparse(node)}'")
        name = node.func.id
        if name == "der":
            return self._der(node)
        if name in CROSSING_HOOKS:
            return self._crossing(node)

        args = [self.expression(a) for a in node.args]
        if name in self.parameters:
            slot = self.slots[name]
            return lambda frame: frame[slot](*[a(frame) for a in args])
        function = self.rep.function(name)
        if len(args) == 1:
            arg = args[0]
            return lambda frame: function(arg(frame))
        return lambda frame: function(*[a(frame) for a in args])

    def _der(self, node):
        if len(node.args) != 1 or not isinstance(node.args[0], ast.Name):
            raise ConfigurationError(f"der() takes one state name: '{ast.unparse(node)}'")
        state = node.args[0].id
        if state not in self.derivatives:
            raise ConfigurationError(f"der({state}): {state!r} is not a state")
        return operator.itemgetter(self.slots[self.derivatives[state]])

    def _crossing(self, node):
        args = node.args
        if len(args) < 2 or not isinstance(args[0], ast.Constant):
            raise ConfigurationError(
                f"'{ast.unparse(node)}': expected "
                f"{node.func.id}(signal_id, value[, label[, direction]])"
            )
        hook = CROSSING_HOOKS[node.func.id]
        signal_id = args[0].value
        value = self.expression(args[1])
        if len(args) > 2 and isinstance(args[2], ast.Constant):
            label = str(args[2].value)
        else:
            label = ast.unparse(args[1])
        direction = (
            _direction(args[3]) if len(args) > 3 else events.CrossingDirection.BOTH
        )
        return lambda frame: hook(frame[MODEL], signal_id, value(frame), label, direction)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def statement(self, compute: Compute) -> Callable:
        statement = compute.statement
        if len(statement.targets) != 1:
            raise ConfigurationError(f"Chained assignment '{compute.source}'")
        target = statement.targets[0]
        value = self.expression(statement.value)

        if isinstance(target, ast.Name):
            slot = self.slots[target.id]

            def step(frame):
                frame[slot] = value(frame)

        elif isinstance(target, (ast.Tuple, ast.List)) and all(
            isinstance(e, ast.Name) for e in target.elts
        ):
            slots = [self.slots[e.id] for e in target.elts]

            def step(frame):
                for slot, item in zip(slots, value(frame)):
                    frame[slot] = item

        else:
            raise ConfigurationError(f"Unsupported assignment '{compute.source}'")
        return _guard(step, compute.source)

    def unpack_states(self, op: UnpackStates) -> Callable:
        entries = [
            (self.slots[s.name], s.start_index, s.length, s.unit) for s in op.states
        ]
        tag = self.rep.tag_state

        def unpack(frame):
            x = frame[X]
            for slot, start, length, unit in entries:
                if length == 1:
                    value = x[start]
                else:
                    value = x[start : start + length].copy()
                frame[slot] = tag(value, unit)

        return unpack

    def pack_derivatives(self, op: PackDerivatives) -> Callable:
        if op.dummy:

            def dummy(frame):
                frame[DER_X][0] = -frame[X][0]

            return dummy

        entries = [
            (self.slots[s.der_name], s.start_index, s.length, s.unit)
            for s in op.states
        ]
        strip = self.rep.strip_derivative

        def pack(frame):
            der_x = frame[DER_X]
            for slot, start, length, unit in entries:
                value = strip(frame[slot], unit)
                if length == 1:
                    der_x[start] = value
                else:
                    der_x[start : start + length] = value

        return _guard(pack, "; ".join(op.describe()))

    def solve_linear_subsystem(self, op: SolveLinearSubsystem) -> Callable:
        info = op.info
        index = op.index
        steps = [self.statement(step) for step in op.steps]
        residuals = [self.expression(r) for r in info.residuals]
        unknowns = [
            (self.slots[name], length, unit)
            for name, length, unit in zip(info.unknowns, info.lengths, info.units)
        ]
        tag = self.rep.tag_state
        magnitude = self.rep.magnitude
        dtype = self.rep.dtype
        n = info.n
        source = f"residuals of linear subsystem {index}"

        def assign(frame, values):
            offset = 0
            for slot, length, unit in unknowns:
                if length == 1:
                    value = values[offset]
                else:
                    value = values[offset : offset + length].copy()
                frame[slot] = tag(value, unit)
                offset += length
            for step in steps:
                step(frame)

        def evaluate_residuals(frame):
            r = []
            for residual in residuals:
                value = magnitude(residual(frame))
                if np.ndim(value) == 0:
                    r.append(value)
                else:
                    r.extend(value)
            return r

        evaluate_residuals = _guard(evaluate_residuals, source)

        def solve(frame):
            subsystem = frame[SUBSYSTEMS][index]

            def residual(values):
                assign(frame, values)
                r = evaluate_residuals(frame)
                if len(r) != n:
                    raise ConfigurationError(
                        f"Linear subsystem {index} has {n} unknowns but "
                        f"{len(r)} residuals"
                    )
                return np.array(r, dtype=dtype)

            subsystem.assemble(residual, initial=frame[MODE].is_initial)
            assign(frame, subsystem.solve())

        return solve

    def build(self) -> Callable:
        plan = self.plan
        slots = self.slots
        operations = []
        for op in plan.operations:
            if isinstance(op, UnpackStates):
                operations.append(self.unpack_states(op))
            elif isinstance(op, Compute):
                operations.append(self.statement(op))
            elif isinstance(op, SolveLinearSubsystem):
                operations.append(self.solve_linear_subsystem(op))
            else:
                operations.append(self.pack_derivatives(op))

        n_slots = plan.n_slots
        time_slot = slots[plan.variable_names[0]]
        parameter_slots = [slots[name] for name in plan.parameter_names]
        variable_slots = [slots[name] for name in plan.variable_names]
        tag_time = self.rep.tag_time

        def run(der_x, x, model, time, mode, subsystems):
            frame = [None] * n_slots
            frame[MODEL] = model
            frame[X] = x
            frame[DER_X] = der_x
            frame[MODE] = mode
            frame[SUBSYSTEMS] = subsystems
            frame[time_slot] = tag_time(time)
            for slot, value in zip(parameter_slots, model.p):
                frame[slot] = value
            for operation in operations:
                operation(frame)
            if mode.stores_result:
                model.append_result(*[frame[slot] for slot in variable_slots])

        return run


# ============================================================================
# Evaluator
# ============================================================================


class DerivativeEvaluator:
    """Callable right-hand side compiled from an evaluation plan.

    Parameters
    ----------
    plan : EvaluationPlan
        Plan returned by :func:`compile_plan`.
    representation : FloatRepresentation, optional
        Numeric representation. Defaults to a unit representation if the
        plan has units, else plain floats.
    name : str, optional
        Name used in logs.
    """

    def __init__(self, plan: EvaluationPlan, representation=None, name: str = "getDerivatives"):
        if representation is None:
            representation = (
                UnitRepresentation() if plan.has_units else FloatRepresentation()
            )
        if plan.has_units and not representation.has_units:
            raise ConfigurationError(
                f"{name}: equations carry units but {representation!r} does not"
            )
        self.plan = plan
        self.representation = representation
        self.name = name
        self._run = _Compiler(plan, representation).build()

    @property
    def equation_info(self) -> EquationInfo:
        return self.plan.equation_info

    @property
    def parameter_names(self) -> List[str]:
        return self.plan.parameter_names

    @property
    def variable_names(self) -> List[str]:
        return self.plan.variable_names

    def __call__(
        self,
        der_x: np.ndarray,
        x: np.ndarray,
        model,
        time: float,
        mode: EvaluationMode = EvaluationMode.DERIVATIVES,
        subsystems: Optional[List[LinearSubsystem]] = None,
    ) -> None:
        """Evaluate the derivatives of ``x`` at ``time`` into ``der_x``.

        ``subsystems`` defaults to the model's own linear subsystems.
        """
        if subsystems is None:
            subsystems = model.linear_subsystems
        with model.evaluation(mode):
            if self.representation.is_float:
                with np.errstate(divide="raise", invalid="raise"):
                    self._run(der_x, x, model, time, mode, subsystems)
            else:
                self._run(der_x, x, model, time, mode, subsystems)

    def with_representation(self, representation) -> "DerivativeEvaluator":
        """Compile the same plan for another numeric representation."""
        return DerivativeEvaluator(self.plan, representation, self.name)

    def create_linear_subsystems(self) -> List[LinearSubsystem]:
        return [
            LinearSubsystem(info, self.representation)
            for info in self.plan.equation_info.linear_subsystems
        ]

    def __repr__(self):
        return f"DerivativeEvaluator(name={self.name!r}, {self.representation!r})"


def generate_get_derivatives(
    equations: Union[ast.Module, Iterable[ast.stmt]],
    equation_info: EquationInfo,
    parameters: Sequence[str],
    variables: Sequence[str],
    name: str = "getDerivatives",
    has_units: bool = False,
    representation=None,
    log_code: bool = False,
) -> DerivativeEvaluator:
    """Build the derivative evaluator of a reduced equation set.

    Parameters are as for :func:`compile_plan`; ``representation``
    selects the numeric representation (see
    :class:`DerivativeEvaluator`) and ``log_code`` logs the plan.
    """
    plan = compile_plan(equations, equation_info, parameters, variables, has_units)
    if log_code:
        logger.info("Evaluation plan of %s:\n%s", name, plan.describe())
    return DerivativeEvaluator(plan, representation, name)
