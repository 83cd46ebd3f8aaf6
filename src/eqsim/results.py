"""Simulation results storage and access.

This module provides the SimulationResult class for storing the
communication points recorded by a model and for looking up variables
by name, including eliminated aliases, negated aliases and structural
zeros.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd

from eqsim.representations import get_registry


@dataclass
class SimulationResult:
    """Container for simulation results.

    Stores the recorded variables as a pandas DataFrame with time as the
    index, together with the name -> column table needed to resolve
    eliminated variables.

    Parameters
    ----------
    time : ndarray
        Time points, shape (n_steps,)
    values : DataFrame
        Recorded variables (all but time) with time index, shape
        (n_steps, n_variables). Vector variables are stored as one
        object column holding an array per row; unit-carrying variables
        are stored as magnitudes.
    variables : dict, optional
        Name -> signed 1-based column (column 1 is time). Defaults to
        the columns of ``values``.
    constants : dict, optional
        Name -> value of variables that are structurally constant.
    units : dict, optional
        Name -> unit string of unit-carrying recorded variables.
    model_name : str, optional
    float_type : str, optional
        Numeric representation the model was simulated with.
    n_events : int, optional
        Number of processed zero-crossing events.

    Examples
    --------
    >>> result = engine.simulate(model, SimulationConfig(stop_time=4.0))
    >>> result.get("phi2")[-1]
    >>> result.get("phi1")  # alias of r*phi2 recorded as its own column
    >>> df = result.to_dataframe()
    """

    time: np.ndarray
    values: pd.DataFrame
    variables: Optional[Dict[str, int]] = None
    constants: Dict[str, Any] = field(default_factory=dict)
    units: Dict[str, str] = field(default_factory=dict)
    model_name: str = ""
    float_type: str = "float64"
    n_events: int = 0

    def __post_init__(self):
        """Validate result dimensions and ensure the time index is set."""
        self.time = np.asarray(self.time, dtype=float)
        n_steps = len(self.time)
        if len(self.values) != n_steps:
            raise ValueError(
                f"Values length {len(self.values)} != time length {n_steps}"
            )
        if self.values.index.name is None:
            self.values.index.name = "time"
        if not np.array_equal(self.values.index.values, self.time):
            self.values.index = pd.Index(self.time, name=self.values.index.name)
        if self.variables is None:
            self.variables = {self.values.index.name: 1}
            for j, name in enumerate(self.values.columns, start=2):
                self.variables[name] = j

    @classmethod
    def from_model(cls, model) -> "SimulationResult":
        """Collect the recorded tuples of a model."""
        names = model.evaluator.variable_names
        records = model.result
        time = np.array([_magnitude(r[0]) for r in records], dtype=float)

        columns = {}
        units = {}
        for j, name in enumerate(names[1:], start=1):
            column = [r[j] for r in records]
            unit = _unit_of(column)
            if unit is not None:
                units[name] = unit
                column = [_magnitude(v, unit) for v in column]
            columns[name] = _column(column)

        values = pd.DataFrame(columns, index=pd.Index(time, name=names[0]))
        return cls(
            time=time,
            values=values,
            variables=dict(model.variables),
            constants={
                name: value
                for name, value in model.parameters_and_constants.items()
                if name not in model.variables
                and name not in model.evaluator.parameter_names
            },
            units=units,
            model_name=model.name,
            float_type=model.float_type,
            n_events=model.crossings.n_events,
        )

    @property
    def n_steps(self) -> int:
        """Number of recorded communication points."""
        return len(self.time)

    @property
    def n_variables(self) -> int:
        """Number of recorded variables (without time)."""
        return len(self.values.columns)

    @property
    def names(self):
        """All names that can be passed to :meth:`get`."""
        return [*self.variables, *self.constants]

    def get(self, name: str):
        """Return the trajectory of a variable.

        Parameters
        ----------
        name : str
            Recorded variable, alias, negated alias or constant.

        Returns
        -------
        values : ndarray or pint.Quantity
            Shape (n_steps,) for scalars, (n_steps, length) for vectors.
            ufloat results are object arrays.

        Raises
        ------
        KeyError
            If ``name`` is unknown.
        """
        if name in self.variables:
            index = self.variables[name]
            sign = 1.0 if index > 0 else -1.0
            column = abs(index) - 1
            if column == 0:
                return sign * self.time
            column_name = self.values.columns[column - 1]
            values = _stack(self.values[column_name].to_numpy())
            if sign < 0:
                values = -values
            unit = self.units.get(column_name)
            if unit is not None:
                return get_registry().Quantity(values, unit)
            return values
        if name in self.constants:
            return np.full(self.n_steps, self.constants[name])
        raise KeyError(f"No variable {name!r} in the results of {self.model_name}")

    __getitem__ = get

    def to_dataframe(self) -> pd.DataFrame:
        """Convert results to a single pandas DataFrame.

        Time is a column (not the index), followed by the recorded
        variables. Unit-carrying columns get the unit in brackets.

        Examples
        --------
        >>> df = result.to_dataframe()
        >>> df.plot(x='time', y=['phi2', 'w2'])
        """
        df = self.values.rename(
            columns={name: f"{name} [{unit}]" for name, unit in self.units.items()}
        )
        return df.reset_index()

    def save(self, filename: str):
        """Save results to file.

        Supports .npz (NumPy), .csv (via pandas), and .mat (MATLAB)
        formats. .npz and .mat need scalar float64 results.

        Parameters
        ----------
        filename : str
            Output filename with extension

        Examples
        --------
        >>> result.save('gear.npz')
        >>> result.save('gear.csv')
        """
        ext = os.path.splitext(filename)[1].lower()

        if ext == ".csv":
            self.to_dataframe().to_csv(filename, index=False)
            return
        if ext not in (".npz", ".mat"):
            raise ValueError(
                f"Unsupported file extension '{ext}'. Use .npz, .csv, or .mat"
            )

        try:
            data = self.values.to_numpy(dtype=float)
        except (TypeError, ValueError):
            raise ValueError(
                f"Only scalar float results can be saved as {ext}"
            ) from None
        if ext == ".npz":
            np.savez_compressed(
                filename,
                time=self.time,
                values=data,
                columns=np.array(self.values.columns.tolist()),
                time_name=self.values.index.name,
                units=np.array([self.units.get(c, "") for c in self.values.columns]),
                model_name=self.model_name,
            )
        else:
            from scipy.io import savemat

            savemat(
                filename,
                {
                    "time": self.time,
                    "values": data,
                    "columns": np.array(self.values.columns.tolist(), dtype=object),
                },
            )

    @classmethod
    def load(cls, filename: str) -> "SimulationResult":
        """Load results from file.

        Aliases and constants are not stored; only the recorded columns
        can be looked up after loading.

        Parameters
        ----------
        filename : str
            Input filename (.npz or .mat format)

        Returns
        -------
        result : SimulationResult
            Loaded simulation results

        Examples
        --------
        >>> result = SimulationResult.load('gear.npz')
        """
        ext = os.path.splitext(filename)[1].lower()

        if ext == ".npz":
            with np.load(filename) as data:
                time = data["time"]
                columns = [str(c) for c in data["columns"]]
                values = pd.DataFrame(
                    data["values"],
                    index=pd.Index(time, name=str(data["time_name"])),
                    columns=columns,
                )
                units = {c: str(u) for c, u in zip(columns, data["units"]) if str(u)}
                model_name = str(data["model_name"])
            return cls(time=time, values=values, units=units, model_name=model_name)

        elif ext == ".mat":
            from scipy.io import loadmat

            data = loadmat(filename)
            time = data["time"].flatten()
            columns = [str(np.squeeze(c)).strip() for c in data["columns"].flatten()]
            values = pd.DataFrame(
                np.atleast_2d(data["values"]),
                index=pd.Index(time, name="time"),
                columns=columns,
            )
            return cls(time=time, values=values)

        else:
            raise ValueError(
                f"Unsupported file extension '{ext}'. Use .npz or .mat"
            )

    def __repr__(self):
        parts = [
            f"SimulationResult(model_name={self.model_name!r}",
            f"n_steps={self.n_steps}",
            f"n_variables={self.n_variables}",
        ]
        if self.float_type != "float64":
            parts.append(f"float_type={self.float_type}")
        if self.n_events:
            parts.append(f"n_events={self.n_events}")
        return ", ".join(parts) + ")"


def _unit_of(column) -> Optional[str]:
    for value in column:
        units = getattr(value, "units", None)
        if units is not None:
            return str(units)
    return None


def _magnitude(value, unit: Optional[str] = None):
    if hasattr(value, "magnitude"):
        return value.m_as(unit) if unit is not None else value.magnitude
    return value


def _column(values: list) -> np.ndarray:
    """Object column for vectors and ufloats, float column otherwise."""
    if all(np.ndim(v) == 0 for v in values):
        try:
            return np.array(values, dtype=float)
        except (TypeError, ValueError):
            pass
    column = np.empty(len(values), dtype=object)
    column[:] = [np.array(v, copy=True) if np.ndim(v) else v for v in values]
    return column


def _stack(values: np.ndarray) -> np.ndarray:
    if values.dtype == object and len(values) and np.ndim(values[0]) > 0:
        return np.vstack(values)
    return values.copy()
