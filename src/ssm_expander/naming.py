"""
naming.py
=========
Canonical names for population-qualified and Erlang-qualified identifiers.

Stratification and Erlang expansion both create new identifiers from a base
name.  The schemes used here are deterministic and injective:

- ``qualify_for_population('I', 'city1')``  → ``'I__pop_city1'``
- ``qualify_for_erlang_stage('E', 2)``      → ``'E__erlang_2'``

Both markers contain a double underscore, which is forbidden in user
identifiers and population labels (see :func:`check_identifier` and
:func:`check_population_label`).  A qualified name is therefore still a valid
identifier for the expression parser, but can never be confused with an
unqualified one, and splitting on the marker recovers the original parts.

When a population-qualified compartment is later Erlang-expanded the Erlang
marker is the outermost one (``E__pop_city1__erlang_2``); :func:`parse_name`
undoes both.
"""

import re
from collections import namedtuple

from ssm_expander.errors import NamingError


POP_MARKER = "__pop_"
ERLANG_MARKER = "__erlang_"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_POPULATION_LABEL = re.compile(r"^[A-Za-z0-9]+(_[A-Za-z0-9]+)*$")

QualifiedName = namedtuple("QualifiedName", ["base", "population", "stage"])


def check_identifier(name):
    """Validate a user-authored identifier.

    Raises
    ------
    NamingError
        If ``name`` is not a valid identifier or contains a reserved marker.
    """
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise NamingError(f"Invalid identifier: {name!r}")
    for marker in (POP_MARKER, ERLANG_MARKER):
        if marker in name:
            raise NamingError(
                f"Identifier {name!r} contains the reserved marker {marker!r}"
            )
    return name


def check_population_label(label):
    """Validate a population label (alphanumeric runs joined by single ``_``)."""
    if not isinstance(label, str) or not _POPULATION_LABEL.match(label):
        raise NamingError(
            f"Invalid population label: {label!r} (use letters, digits and "
            "single underscores)"
        )
    return label


def qualify_for_population(base_name, population):
    """Return the population-qualified form of ``base_name``."""
    return f"{base_name}{POP_MARKER}{population}"


def qualify_for_erlang_stage(base_name, stage_index):
    """Return the name of Erlang sub-compartment ``stage_index`` (1-based)."""
    if stage_index < 1:
        raise NamingError(f"Erlang stages are 1-based, got {stage_index}")
    return f"{base_name}{ERLANG_MARKER}{stage_index}"


def unqualify(name):
    """Split a population-qualified name into ``(base_name, population)``.

    ``population`` is None for names without the population marker.
    """
    base, marker, population = name.partition(POP_MARKER)
    if not marker:
        return name, None
    return base, population


def unqualify_erlang(name):
    """Split an Erlang stage name into ``(base_name, stage_index)``.

    ``stage_index`` is None for names that are not Erlang stages.
    """
    base, marker, stage = name.rpartition(ERLANG_MARKER)
    if not marker or not stage.isdigit():
        return name, None
    return base, int(stage)


def parse_name(name):
    """Decompose any generated name into a :class:`QualifiedName`.

    Examples
    --------
    >>> parse_name('E__pop_city1__erlang_2')
    QualifiedName(base='E', population='city1', stage=2)
    >>> parse_name('beta')
    QualifiedName(base='beta', population=None, stage=None)
    """
    stem, stage = unqualify_erlang(name)
    base, population = unqualify(stem)
    return QualifiedName(base, population, stage)


def population_of(name):
    """Return the population label a generated name belongs to, or None."""
    return parse_name(name).population
