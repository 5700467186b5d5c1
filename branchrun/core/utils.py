"""
Text utilities for the branch execution engine.

Includes:
- Canonical forms of step text and variable names
- Quote and bracket stripping
- Escape sequence handling
- Indentation helpers
"""

import re

from branchrun.core.constants import SPACES_PER_INDENT

_UNESCAPES = {
    "\\": "\\",
    '"': '"',
    "'": "'",
    "[": "[",
    "]": "]",
    "n": "\n",
    "r": "\r",
    "t": "\t",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
}


def canonicalize(text: str) -> str:
    """
    Canonical form of a step text or variable name.

    Trims, lower-cases, and collapses every run of whitespace to one space.

    Args:
        text: Text to canonicalize

    Returns:
        Canonical text
    """
    return re.sub(r"\s+", " ", text.strip().lower())


def keep_case_canonicalize(text: str) -> str:
    """Same as canonicalize(), but keeps the original casing."""
    return re.sub(r"\s+", " ", text.strip())


def has_quotes(text: str) -> bool:
    """True if text is wrapped in 'quotes', "quotes" or [brackets]."""
    return re.match(r"^'.*'$|^\".*\"$|^\[.*\]$", text.strip(), re.DOTALL) is not None


def strip_quotes(text: str) -> str:
    """
    Remove surrounding quotes from a string literal.

    Args:
        text: 'string', "string" or [string]

    Returns:
        The inner text, or text unchanged if it isn't quoted
    """
    if not has_quotes(text):
        return text
    return text.strip()[1:-1]


def strip_brackets(text: str) -> str:
    """Remove {{ }} or { } from a variable reference and trim it."""
    return re.sub(r"^\{\{|\}\}$|^\{|\}$", "", text).strip()


def unescape(text: str) -> str:
    """
    Replace backslash escape sequences with the characters they stand for.

    Unknown sequences unescape to the escaped character itself.

    Args:
        text: Escaped text, e.g. containing a literal backslash-n

    Returns:
        Unescaped text
    """
    return re.sub(r"\\(.)", lambda m: _UNESCAPES.get(m.group(1), m.group(1)), text, flags=re.DOTALL)


def get_indents(n: int, spaces_per_indent: int = SPACES_PER_INDENT) -> str:
    """Whitespace for n indents."""
    return " " * (spaces_per_indent * n)


def add_whitespace_to_end(text: str, length: int) -> str:
    """Pad text with spaces up to length."""
    return text.ljust(length)


def log_value(value) -> str:
    """Render a value for a step log entry, backquoting strings."""
    if isinstance(value, str):
        return f"`{value}`"
    return repr(value)


def is_primitive(value) -> bool:
    """True for the value types that can be interpolated into step text."""
    return isinstance(value, (str, bool, int, float))
