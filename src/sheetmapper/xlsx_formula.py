"""
Formula templates with cell placeholders.

A template such as ``SUM(C{rowNumber}:E{rowNumber})`` is expanded for the
cell it is written to. ``\\$`` stands for a literal ``$``.
"""

import logging
from collections.abc import Callable

from .xlsx_address import CellPosition
from .xlsx_errors import FormulaError

logger = logging.getLogger(__name__)

PLACEHOLDERS: dict[str, Callable[[CellPosition], str]] = {
    "rowNumber": lambda position: str(position.row + 1),
    "columnNumber": lambda position: str(position.column + 1),
    "columnAlpha": lambda position: position.column_letter,
}


def expand_formula(template: str, position: CellPosition) -> str:
    """Substitute the placeholders of ``template`` for the cell at ``position``."""
    out: list[str] = []
    i = 0
    while i < len(template):
        ch = template[i]
        if ch == "\\" and template.startswith("$", i + 1):
            out.append("$")
            i += 2
            continue
        if ch == "{":
            end = template.find("}", i + 1)
            if end < 0:
                raise FormulaError(template, f"unclosed '{{' at {i}")
            name = template[i + 1 : end]
            if "{" in name:
                raise FormulaError(template, f"nested '{{' at {i}")
            try:
                out.append(PLACEHOLDERS[name](position))
            except KeyError:
                raise FormulaError(template, f"unknown placeholder '{name}'") from None
            i = end + 1
            continue
        if ch == "}":
            raise FormulaError(template, f"unmatched '}}' at {i}")
        out.append(ch)
        i += 1
    formula = "".join(out)
    if formula.startswith("="):
        formula = formula[1:]
    logger.debug("Formula for %s: %s", position, formula)
    return formula
