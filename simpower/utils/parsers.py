"""
Parsing utilities for SimPower.

This module splits mixed-model formulas into their fixed and random parts,
builds reduced formulas for term tests, and parses ``name=value``
assignment strings for fixed-effect coefficients.
"""

import ast
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from patsy import INTERCEPT, ModelDesc

from ..errors import InvalidConfiguration

__all__ = []

# Unicode-aware identifier pattern: letter or underscore, then word characters
_IDENT = r"[^\W\d]\w*"

_RANDOM_TERM = re.compile(r"\(\s*([^()|]*?)\s*\|\s*([^()|]+?)\s*\)")


class _AssignmentParser:
    """Parses comma-separated ``name=value`` assignment strings.

    Used for fixed-effect coefficients, e.g. ``"Intercept=10, cond=0.5"``.
    Names may contain brackets and parentheses (``C(cond)[T.b]=0.4``);
    commas inside parentheses do not split assignments.

    A module-level singleton ``_parser`` is used throughout the codebase.
    """

    def _parse(self, input_string: str, available_items: Sequence[str]) -> Tuple[Dict[str, float], List[str]]:
        """Parse a comma-separated assignment string.

        Args:
            input_string: Raw user input (e.g. ``"x1=0.5, x2=0.3"``).
            available_items: Valid names that may appear on the left-hand
                side of assignments.

        Returns:
            Tuple of ``(parsed_dict, error_list)``.
        """
        assignments = self._split_assignments(input_string)
        parsed_items = {}
        errors = []

        for assignment in assignments:
            try:
                name, value = self._parse_assignment(assignment)
            except ValueError as e:
                errors.append(str(e))
                continue

            if name not in available_items:
                errors.append(f"'{name}' not found. Available: {', '.join(available_items)}")
                continue

            parsed_value, error = self._parse_effect_value(value)
            if error:
                errors.append(f"{name}: {error}")
                continue

            parsed_items[name] = parsed_value

        return parsed_items, errors

    def _split_assignments(self, input_string: str) -> List[str]:
        """Split assignments respecting parentheses."""
        assignments = []
        current: List[str] = []
        paren_count = 0

        for char in input_string:
            if char == "," and paren_count == 0:
                if current:
                    assignments.append("".join(current).strip())
                    current = []
            else:
                if char in "([":
                    paren_count += 1
                elif char in ")]":
                    paren_count -= 1
                current.append(char)

        if current:
            assignments.append("".join(current).strip())

        return [a for a in assignments if a]

    def _parse_assignment(self, assignment: str) -> Tuple[str, str]:
        """Parse single assignment into name and value parts."""
        if "=" not in assignment:
            raise ValueError(f"Invalid format: '{assignment}'. Expected 'name=value'")
        name, value = assignment.rsplit("=", 1)
        return name.strip(), value.strip()

    def _parse_effect_value(self, value: str) -> Tuple[float, Optional[str]]:
        """Parse effect size value."""
        try:
            return float(value), None
        except ValueError:
            return 0.0, f"Invalid effect size '{value}'. Must be a number"


_parser = _AssignmentParser()


def _parse_equation(equation: str) -> Tuple[str, str, List[Dict[str, Any]]]:
    """Split an lme4-style formula into outcome, fixed part and random terms.

    Supported random-effect syntax:
    - ``(1|group)``: random intercept
    - ``(1 + x|group)``: random intercept and slope
    - ``(0 + x|group)``: random slope without intercept
    - ``(x|group)``: intercept implied, as in lme4

    Args:
        equation: Formula string (e.g. ``"y ~ cond + (1|subj) + (1|item)"``).

    Returns:
        Tuple of ``(dependent_var, fixed_formula, random_effects)`` where
        *random_effects* is a list of dicts with keys ``"grouping_var"`` and
        ``"terms"`` (``"1"`` marks the intercept, other entries are slope
        variables).

    Raises:
        InvalidConfiguration: If the formula has no ``~``, a grouping
            variable appears more than once, or a random term is malformed.
    """
    if "~" not in equation:
        raise InvalidConfiguration(f"Formula must contain '~', got '{equation}'")

    left_side, right_side = equation.split("~", 1)
    dep_var = left_side.strip()
    if not re.fullmatch(_IDENT, dep_var):
        raise InvalidConfiguration(f"Outcome must be a single column name, got '{dep_var}'")

    random_effects: List[Dict[str, Any]] = []
    seen_grouping_vars: Set[str] = set()

    for match in _RANDOM_TERM.finditer(right_side):
        term_str, grouping_var = match.group(1), match.group(2).strip()

        if not re.fullmatch(_IDENT, grouping_var):
            raise InvalidConfiguration(f"Unsupported grouping expression '{grouping_var}' (nested or interacted groups are not supported)")
        if grouping_var in seen_grouping_vars:
            raise InvalidConfiguration(f"Duplicate random effect grouping variable: '{grouping_var}'")
        seen_grouping_vars.add(grouping_var)

        parts = [p.strip() for p in term_str.split("+") if p.strip()]
        if not parts:
            raise InvalidConfiguration(f"Empty random effect term for '{grouping_var}'")

        terms: List[str] = []
        if "0" not in parts and "-1" not in parts:
            terms.append("1")
        for part in parts:
            if part in ("0", "1", "-1"):
                continue
            if not re.fullmatch(_IDENT, part):
                raise InvalidConfiguration(f"Random slope must be a column name, got '{part}' in '({term_str}|{grouping_var})'")
            terms.append(part)

        if not terms:
            raise InvalidConfiguration(f"Random effect term for '{grouping_var}' has no intercept and no slopes")

        random_effects.append({"grouping_var": grouping_var, "terms": terms})

    formula_part = _RANDOM_TERM.sub("", right_side)

    # Clean up extra + signs and whitespace
    formula_part = re.sub(r"\+\s*\+", "+", formula_part)
    formula_part = re.sub(r"^\s*\+", "", formula_part)
    formula_part = re.sub(r"\+\s*$", "", formula_part)
    formula_part = re.sub(r"\s+", " ", formula_part).strip()

    if "|" in formula_part:
        raise InvalidConfiguration(f"Could not parse random effects in '{equation}'")

    if not formula_part:
        formula_part = "1"

    return dep_var, formula_part, random_effects


def _build_formula(dep_var: str, fixed_formula: str, random_effects: Sequence[Dict[str, Any]]) -> str:
    """Reassemble an lme4-style formula from its parts."""
    pieces = [fixed_formula]
    for re_spec in random_effects:
        terms = list(re_spec["terms"])
        if "1" in terms:
            lhs = " + ".join(terms)
        else:
            lhs = " + ".join(["0"] + terms)
        pieces.append(f"({lhs}|{re_spec['grouping_var']})")
    return f"{dep_var} ~ " + " + ".join(pieces)


def _fixed_term_names(fixed_formula: str) -> List[str]:
    """Return patsy term names of the fixed part (``"Intercept"`` for the intercept)."""
    desc = ModelDesc.from_formula(fixed_formula)
    return [term.name() for term in desc.rhs_termlist]


def _drop_fixed_term(fixed_formula: str, term: str) -> str:
    """Return *fixed_formula* without *term*, for the nested comparison model.

    Terms are matched by their patsy name after ``*`` expansion, so
    ``"a*b"`` minus ``"a:b"`` gives ``"a + b"``.

    Raises:
        InvalidConfiguration: If *term* is not a term of the formula.
    """
    desc = ModelDesc.from_formula(fixed_formula)
    wanted = re.sub(r"\s+", "", term)
    if wanted == "1":
        wanted = "Intercept"

    kept = [t for t in desc.rhs_termlist if re.sub(r"\s+", "", t.name()) != wanted]
    if len(kept) == len(desc.rhs_termlist):
        available = ", ".join(t.name() for t in desc.rhs_termlist)
        raise InvalidConfiguration(f"Term '{term}' not found in '{fixed_formula}'. Available terms: {available}")

    reduced = ModelDesc([], kept).describe()
    reduced = reduced.lstrip("~").strip()
    if not reduced or (INTERCEPT not in kept and reduced == "0"):
        raise InvalidConfiguration(f"Dropping '{term}' from '{fixed_formula}' leaves an empty model")
    return reduced


def _referenced_variables(fixed_formula: str) -> List[str]:
    """Return the data columns a patsy right-hand side refers to.

    Each factor's code is parsed with ``ast``; names used as called
    functions (``C``, ``np.log``, ``Treatment``) are not columns.
    """
    desc = ModelDesc.from_formula(fixed_formula)
    names: List[str] = []
    for term in desc.rhs_termlist:
        for factor in term.factors:
            for name in _names_in_expression(factor.code):
                if name not in names:
                    names.append(name)
    return names


def _names_in_expression(code: str) -> List[str]:
    tree = ast.parse(code, mode="eval")

    called: Set[int] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            root = node.func
            while isinstance(root, ast.Attribute):
                root = root.value
            called.add(id(root))
        elif isinstance(node, ast.Attribute):
            # np.pi, math.e: the module root is not a column
            called.add(id(node.value))

    names = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and id(node) not in called and node.id not in names:
            names.append(node.id)
    return names
