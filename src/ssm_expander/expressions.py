"""
expressions.py
==============
Parsing, rewriting and simplification of rate / mean / sd expressions.

Model expressions are plain strings such as ``'beta*I/N'`` or
``'(1-p)*gamma'``.  Instead of rewriting them with regular expressions,
every operation here goes through a SymPy expression tree:

1. **Scan** — the string is parsed with :mod:`ast` to collect the identifiers
   and the names of called functions.  Every identifier is bound to a plain
   ``sp.Symbol`` so that model names like ``S``, ``I``, ``N``, ``E`` or
   ``gamma`` never turn into SymPy singletons or special functions.
2. **Parse** — :func:`sympy.parsing.sympy_parser.parse_expr` builds the tree.
   Functions listed in ``KNOWN_FUNCTIONS`` map to their SymPy counterparts;
   any other call (e.g. ``heaviside``) becomes an opaque ``sp.Function`` that
   is re-emitted verbatim.
3. **Rewrite** — substitution is a simultaneous ``xreplace`` on symbols, so
   only whole identifiers are ever matched and replacement text is never
   matched again.
4. **Print** — :func:`to_string` re-emits canonical text for the downstream
   compiler.

Key entry points
----------------
- ``substitute_identifier()`` / ``substitute_identifiers()``
- ``simplify()``                — batch simplification of rate expressions
- ``free_identifiers()``        — identifiers referenced by an expression
"""

import ast

import sympy as sp
from sympy.parsing.sympy_parser import (
    convert_xor,
    parse_expr,
    standard_transformations,
)
from sympy.printing.str import StrPrinter

from ssm_expander.errors import ExpressionError


KNOWN_FUNCTIONS = {
    'exp': sp.exp,
    'log': sp.log,
    'sqrt': sp.sqrt,
    'pow': sp.Pow,
    'sin': sp.sin,
    'cos': sp.cos,
    'acos': sp.acos,
}

# Names emitted by parse_expr's own transformations; binding them to model
# symbols would break number parsing.
_RESERVED = {'Integer', 'Float', 'Rational', 'Symbol', 'Function'}

_TRANSFORMATIONS = standard_transformations + (convert_xor,)


class _RatePrinter(StrPrinter):
    """String printer whose output parses back to the same tree.

    Floats use their shortest round-trip form.  The constants e and pi are
    written as calls, since bare ``E`` or ``pi`` would parse back as model
    identifiers.
    """

    def _print_Float(self, expr):
        return repr(float(expr))

    def _print_Exp1(self, expr):
        return "exp(1)"

    def _print_Pi(self, expr):
        return "acos(-1)"


_PRINTER = _RatePrinter()

_NON_REAL = (
    (sp.I, "the imaginary unit"),
    (sp.zoo, "complex infinity"),
    (sp.nan, "NaN"),
    (sp.oo, "infinity"),
    (-sp.oo, "infinity"),
)


# ======================================================================
# Parsing and printing
# ======================================================================

def _scan(text):
    """Return ``(identifiers, functions)`` referenced by ``text``."""
    try:
        tree = ast.parse(text.replace('^', '**'), mode='eval')
    except SyntaxError as exc:
        raise ExpressionError(f"Cannot parse expression '{text}': {exc.msg}") from exc

    identifiers, functions = set(), set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise ExpressionError(f"Unsupported call in expression '{text}'")
            functions.add(node.func.id)
        elif isinstance(node, ast.Name):
            identifiers.add(node.id)
        elif isinstance(node, (ast.Attribute, ast.Subscript, ast.Lambda)):
            raise ExpressionError(
                f"Unsupported construct '{type(node).__name__}' in expression '{text}'"
            )

    # Call targets are visited as Name nodes too.
    identifiers -= functions
    clash = (identifiers | functions) & _RESERVED
    if clash:
        raise ExpressionError(
            f"Reserved name(s) {sorted(clash)} used in expression '{text}'"
        )
    return identifiers, functions


def parse_expression(expr, positive=None):
    """Parse an expression string into a SymPy expression.

    Parameters
    ----------
    expr : str, int, float or sympy.Basic
        The expression.  SymPy objects are returned unchanged.
    positive : iterable of str, optional
        Identifiers to create with ``positive=True``.  Used by
        :func:`simplify`; everywhere else symbols carry no assumptions so
        that trees built separately compare equal.

    Returns
    -------
    sympy.Expr

    Raises
    ------
    ExpressionError
        If the expression is empty or not valid syntax.
    """
    if isinstance(expr, sp.Basic):
        return expr
    text = str(expr).strip()
    if not text:
        raise ExpressionError("Empty expression")

    identifiers, functions = _scan(text)
    positive = set(positive or ())

    local_dict = {}
    for name in identifiers:
        if name in positive:
            local_dict[name] = sp.Symbol(name, positive=True)
        else:
            local_dict[name] = sp.Symbol(name)
    for name in functions:
        local_dict[name] = KNOWN_FUNCTIONS.get(name) or sp.Function(name)

    try:
        return parse_expr(text, local_dict=local_dict, transformations=_TRANSFORMATIONS)
    except (SyntaxError, TypeError, sp.SympifyError) as exc:
        raise ExpressionError(f"Cannot parse expression '{text}': {exc}") from exc


def to_string(expr):
    """Render a SymPy expression as canonical expression text.

    Raises
    ------
    ExpressionError
        If the expression holds a value with no real, finite rate form
        (imaginary unit, infinities, NaN) or an unsupported constant.
    """
    if isinstance(expr, sp.Basic):
        for atom, label in _NON_REAL:
            if expr.has(atom):
                raise ExpressionError(
                    f"Expression '{sp.sstr(expr)}' contains {label}"
                )
        unsupported = expr.atoms(sp.NumberSymbol) - {sp.E, sp.pi}
        if unsupported:
            raise ExpressionError(
                f"Expression '{sp.sstr(expr)}' uses unsupported constant(s) "
                f"{sorted(str(c) for c in unsupported)}"
            )
    return _PRINTER.doprint(expr)


def free_identifiers(expr):
    """Return the set of identifier names referenced by ``expr``.

    Function names are not included: ``free_identifiers('heaviside(S - 1)')``
    is ``{'S'}``.
    """
    if isinstance(expr, sp.Basic):
        return {s.name for s in expr.free_symbols}
    if isinstance(expr, (int, float)):
        return set()
    identifiers, _ = _scan(str(expr).strip())
    return identifiers


# ======================================================================
# Substitution
# ======================================================================

def substitute_identifiers(expr, mapping):
    """Replace whole identifiers in ``expr`` according to ``mapping``.

    All replacements happen simultaneously, so a replacement that contains
    another key of ``mapping`` is never rewritten again.  Expressions that
    reference none of the keys are returned verbatim, keeping the author's
    formatting.

    Parameters
    ----------
    expr : str
        The expression text.
    mapping : dict
        Identifier → replacement.  Replacements may be identifiers or full
        expressions (e.g. ``'(N - I - R)'``).

    Returns
    -------
    str
    """
    if expr is None:
        return None
    hits = free_identifiers(expr) & set(mapping)
    if not hits:
        return expr if isinstance(expr, str) else to_string(parse_expression(expr))

    tree = parse_expression(expr)
    replacements = {sp.Symbol(name): parse_expression(mapping[name]) for name in hits}
    return to_string(tree.xreplace(replacements))


def substitute_identifier(expr, old_name, new_name):
    """Replace every whole-identifier occurrence of ``old_name`` in ``expr``.

    ``substitute_identifier('beta*I/N + Idiotic', 'I', 'J')`` rewrites the
    standalone ``I`` only; ``Idiotic`` is a different identifier.
    """
    return substitute_identifiers(expr, {old_name: new_name})


def rename(name, mapping):
    """Rename a bare identifier (no parsing needed)."""
    return mapping.get(name, name)


# ======================================================================
# Algebraic helpers
# ======================================================================

def multiply(*factors):
    """Return the product of the given expressions as text."""
    product = sp.Integer(1)
    for factor in factors:
        product = product * parse_expression(factor)
    return to_string(product)


def divide(numerator, denominator):
    """Return ``numerator / denominator`` as text."""
    return to_string(parse_expression(numerator) / parse_expression(denominator))


def total(names):
    """Return the sum of the given identifiers as text."""
    return to_string(sp.Add(*[sp.Symbol(n) for n in names]))


# ======================================================================
# Simplification
# ======================================================================

def simplify(expressions, known_identifiers=None, log=None):
    """Simplify a batch of expressions.

    Each expression is parsed with every name in ``known_identifiers``
    declared positive (compartments and parameters are non-negative
    quantities), passed through :func:`sympy.simplify` and printed back.
    An expression SymPy fails to simplify is kept unchanged; this is not an
    error.

    Parameters
    ----------
    expressions : list of str
    known_identifiers : iterable of str, optional
    log : callable, optional
        ``log(message)`` used to report expressions left unsimplified.

    Returns
    -------
    list of str
        Same length and order as ``expressions``.
    """
    known = set(known_identifiers or ())
    results = []
    for expr in expressions:
        tree = parse_expression(expr, positive=known)
        try:
            simplified = sp.simplify(tree)
        except (TypeError, ValueError, NotImplementedError, RecursionError) as exc:
            if log is not None:
                log(f"(!) Could not simplify '{expr}': {exc}")
            results.append(expr if isinstance(expr, str) else to_string(tree))
            continue
        try:
            results.append(to_string(simplified))
        except ExpressionError as exc:
            raise ExpressionError(f"Simplifying '{expr}' failed: {exc}") from exc
    return results
