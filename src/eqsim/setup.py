"""Model values from nested parameter dictionaries.

Model parameters and start values are usually kept in nested
dictionaries (e.g. loaded from YAML or JSON), grouped by component::

    gear:
      J1: {value: 0.0025, units: kg*m**2}
      r: {value: 105, desc: Gear ratio}
    phi2: {value: 0.5, units: rad, init: true}

A leaf is a dict with a ``'value'`` key plus optional fields
(``'units'``, ``'init'``, ``'desc'``, ...) or a bare number. The
functions below flatten the nesting into ``component_name`` keys and
turn the entries into the parameter and start-value mappings that
:func:`~eqsim.model.instantiate_model` expects.
"""

from typing import Any, Dict, Tuple

import pint

from eqsim.representations import get_registry


def read_param_values(params_dict, parent_key="", sep="_"):
    """Flatten a nested parameter dictionary.

    Parameters
    ----------
    params_dict : dict
        Nested dictionary. Dicts with a ``'value'`` key are leaves.
    parent_key : str, optional
        Prefix of the keys (used in recursion).
    sep : str, optional
        Separator between the levels of a key, '_' by default.

    Returns
    -------
    dict
        Flat mapping ``key -> entry``. An entry is a copy of the leaf
        dict; a bare value ``v`` becomes ``{'value': v, 'units': None}``.

    Examples
    --------
    >>> flat = read_param_values({
    ...     'gear': {'J1': {'value': 0.0025, 'units': 'kg*m**2'}, 'r': 105.0},
    ... })
    >>> flat['gear_J1']
    {'value': 0.0025, 'units': 'kg*m**2'}
    >>> flat['gear_r']
    {'value': 105.0, 'units': None}

    See Also
    --------
    read_param_values_pint : Same, with units as pint objects
    """
    flat = {}
    for key, entry in params_dict.items():
        name = f"{parent_key}{sep}{key}" if parent_key else key
        if not isinstance(entry, dict):
            flat[name] = {"value": entry, "units": None}
        elif "value" in entry:
            flat[name] = dict(entry)
        else:
            flat.update(read_param_values(entry, parent_key=name, sep=sep))
    return flat


def read_param_values_pint(params_dict, ureg=None, parent_key="", sep="_"):
    """Flatten a nested parameter dictionary and parse the units with pint.

    Parameters
    ----------
    params_dict : dict
        As for :func:`read_param_values`, units given as strings.
    ureg : pint.UnitRegistry, optional
        Registry used to parse the units. Defaults to the application
        registry the models use.
    parent_key, sep : str, optional
        As for :func:`read_param_values`.

    Returns
    -------
    dict
        Flat mapping as from :func:`read_param_values`, with ``'units'``
        a ``pint.Unit`` or None.

    Examples
    --------
    >>> flat = read_param_values_pint({'pendulum': {'L': {'value': 1.0, 'units': 'm'}}})
    >>> flat['pendulum_L']['units']
    <Unit('meter')>
    """
    if ureg is None:
        ureg = get_registry()
    flat = read_param_values(params_dict, parent_key=parent_key, sep=sep)
    for entry in flat.values():
        units = entry.get("units")
        entry["units"] = ureg(units).units if units else None
    return flat


def to_parameter_map(params_flat: Dict[str, dict], ureg=None) -> Dict[str, Any]:
    """Turn flattened entries into ``name -> value``.

    Entries with units become ``pint.Quantity`` objects of the shared
    registry, the others keep their plain value.

    Examples
    --------
    >>> to_parameter_map({'r': {'value': 105.0, 'units': None}})
    {'r': 105.0}
    """
    if ureg is None:
        ureg = get_registry()
    values = {}
    for name, entry in params_flat.items():
        units = entry.get("units")
        if units is None or units == "":
            values[name] = entry["value"]
        else:
            if not isinstance(units, pint.Unit):
                units = str(units)
            values[name] = ureg.Quantity(entry["value"], units)
    return values


def split_model_values(
    params_flat: Dict[str, dict], ureg=None
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Separate start values from parameters.

    Entries with a true ``'init'`` field are start values of states.
    They are returned as plain magnitudes because the state vector is
    unit-free; the state's unit comes from its :class:`StateInfo`.

    Returns
    -------
    parameters : dict
        ``name -> value``, see :func:`to_parameter_map`.
    start_values : dict
        ``name -> start value``.
    """
    parameters = {k: e for k, e in params_flat.items() if not e.get("init", False)}
    start_values = {k: e["value"] for k, e in params_flat.items() if e.get("init", False)}
    return to_parameter_map(parameters, ureg), start_values
