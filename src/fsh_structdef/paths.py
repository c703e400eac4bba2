"""FSH path syntax utilities.

A FSH path is a dot separated list of element names where each name may carry
bracketed qualifiers::

        component[SystolicBP].value[x]
        extension[us-core-race].extension[ombCategory][1].valueCoding
        name[+].given[=]

Brackets hold slice names (``[SystolicBP]``), reslice chains
(``[Lab][Chem]`` meaning ``Lab/Chem``), repetition indexes (``[0]``), soft
indexes (``[+]`` next, ``[=]`` same as last) or a reference target name
(``performer[Practitioner]``). ``[x]`` directly after a name is part of the
name, not a qualifier. Periods inside brackets (``extension[http://x.org/a.b]``)
do not split the path.

Example:
        >>> [p.base for p in parse_fsh_path("component[SystolicBP].value[x]")]
        ['component', 'value[x]']
        >>> parse_fsh_path("component[SystolicBP].value[x]")[0].brackets
        ['SystolicBP']
        >>> resolve_soft_indexing([("name[+].given[+]", None), ("name[=].given[+]", None)])[0]
        [('name[0].given[0]', None), ('name[0].given[1]', None)]
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from .models import PathPart

logger = logging.getLogger(__name__)

_PERIOD_OUTSIDE_BRACKETS = re.compile(r"\.(?![^\[]*\])")
_INDEX_RE = re.compile(r"^[0-9]+$")
_SIGNED_INT_RE = re.compile(r"^[-+]?\d+$")


class SoftIndexingError(ValueError):
    """A soft index sequence began with ``[=]``."""


def split_on_path_periods(path: str) -> List[str]:
    """Split a path on periods that are not inside brackets."""
    return _PERIOD_OUTSIDE_BRACKETS.split(path)


def parse_fsh_path(fsh_path: str) -> List[PathPart]:
    """Parse a FSH path into :class:`PathPart` segments.

    Slice names seen so far are accumulated on each part (``slices``) so that
    soft indexes can be tracked per slice context.
    """
    parts: List[PathPart] = []
    seen_slices: List[str] = []
    segments = [fsh_path] if fsh_path == "." else split_on_path_periods(fsh_path)
    for segment in segments:
        pieces = segment.split("[")
        if len(pieces) == 1 or segment.endswith("[x]"):
            parts.append(PathPart(base=segment))
            continue
        base = pieces[0]
        brackets = _split_brackets(segment[len(base):])
        if brackets and brackets[0] == "x":
            base += "[x]"
            brackets = brackets[1:]
        for bracket in brackets:
            if not _INDEX_RE.match(bracket) and bracket not in ("+", "="):
                seen_slices.append(bracket)
        part = PathPart(base=base, brackets=brackets or None)
        if seen_slices:
            part.slices = list(seen_slices)
        parts.append(part)
    return parts


def _split_brackets(text: str) -> List[str]:
    """Split ``[a][b.c][0]`` into ``['a', 'b.c', '0']``."""
    brackets: List[str] = []
    depth = 0
    current = ""
    for char in text:
        if char == "[":
            if depth > 0:
                current += char
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                brackets.append(current)
                current = ""
            else:
                current += char
        elif depth > 0:
            current += char
    return brackets


def assemble_fsh_path(parts: List[PathPart]) -> str:
    """Inverse of :func:`parse_fsh_path`."""
    segments = []
    for part in parts:
        segments.append(part.base + "".join(f"[{b}]" for b in (part.brackets or [])))
    return ".".join(segments)


def get_array_index(part: PathPart) -> Optional[int]:
    """Return the last bracket as a non-negative index, or ``None``."""
    if not part.brackets:
        return None
    last = part.brackets[-1]
    if _SIGNED_INT_RE.match(last):
        index = int(last)
        return index if index >= 0 else None
    return None


def _map_name(part: PathPart) -> str:
    return f"{part.prefix or ''}.{part.base}|{'|'.join(part.slices or [])}"


def _convert_soft_indices(part: PathPart, path_map: Dict[str, int]) -> None:
    name = _map_name(part)
    brackets = part.brackets
    if name not in path_map:
        numeric = next((b for b in brackets or [] if _INDEX_RE.match(b)), None)
        if numeric is not None:
            path_map[name] = int(numeric)
        else:
            path_map[name] = 0
            if brackets and "+" in brackets:
                brackets[brackets.index("+")] = "0"
            elif brackets and "=" in brackets:
                brackets[brackets.index("=")] = "0"
                raise SoftIndexingError(
                    'The first index in a Soft Indexing sequence must be "+", '
                    'an actual index of "0" has been assumed'
                )
        return
    for i, bracket in enumerate(brackets or []):
        if bracket == "+":
            path_map[name] += 1
            brackets[i] = str(path_map[name])
        elif bracket == "=":
            brackets[i] = str(path_map[name])
        elif _INDEX_RE.match(bracket):
            path_map[name] = int(bracket)


def _convert_soft_indices_strict(
    part: PathPart, path_map: Dict[str, int], max_map: Dict[str, int]
) -> None:
    name = _map_name(part)
    brackets = part.brackets
    add_to_base: Optional[int] = None
    if name not in path_map:
        numeric = next((b for b in brackets or [] if _INDEX_RE.match(b)), None)
        if numeric is not None:
            path_map[name] = max_map[name] = int(numeric)
            add_to_base = int(numeric) + 1
        else:
            path_map[name] = max_map[name] = 0
            add_to_base = 1
            if brackets and "+" in brackets:
                brackets[brackets.index("+")] = "0"
            elif brackets and "=" in brackets:
                brackets[brackets.index("=")] = "0"
                raise SoftIndexingError(
                    'The first index in a Soft Indexing sequence must be "+", '
                    'an actual index of "0" has been assumed'
                )
    else:
        for i, bracket in enumerate(brackets or []):
            if bracket == "=":
                brackets[i] = str(path_map[name])
                continue
            if bracket == "+":
                new_index = path_map[name] + 1
                brackets[i] = str(new_index)
            elif _INDEX_RE.match(bracket):
                new_index = int(bracket)
            else:
                continue
            path_map[name] = new_index
            if new_index > max_map[name]:
                add_to_base = new_index - max_map[name]
                max_map[name] = new_index
    # each new index inside a slice also occupies a slot in the less-sliced element
    if part.slices and add_to_base is not None:
        for take in range(len(part.slices) - 1, -1, -1):
            less_sliced = f"{part.prefix or ''}.{part.base}|{'|'.join(part.slices[:take])}"
            if less_sliced not in path_map:
                path_map[less_sliced] = max_map[less_sliced] = add_to_base - 1
            else:
                new_index = path_map[less_sliced] + add_to_base
                path_map[less_sliced] = new_index
                if new_index > max_map[less_sliced]:
                    max_map[less_sliced] = new_index


def resolve_soft_indexing(
    entries: List[Tuple[str, Optional[str]]], strict: bool = False
) -> Tuple[List[Tuple[str, Optional[str]]], List[Tuple[int, str]]]:
    """Replace ``[+]`` and ``[=]`` with concrete indexes.

    Args:
        entries: ``(path, caret_path)`` pairs in rule order; ``caret_path`` is
            ``None`` for rules without one.
        strict: When True, named slices occupy indexes of their sliced element
            so numeric indexes never address a named slice.

    Returns:
        The rewritten pairs and a list of ``(entry index, message)`` problems.
    """
    path_map: Dict[str, int] = {}
    max_map: Dict[str, int] = {}
    caret_maps: Dict[str, Dict[str, int]] = {}
    caret_max_maps: Dict[str, Dict[str, int]] = {}
    resolved: List[Tuple[str, Optional[str]]] = []
    problems: List[Tuple[int, str]] = []

    def convert(parts: List[PathPart], pmap: Dict[str, int], mmap: Dict[str, int], idx: int) -> None:
        for i, part in enumerate(parts):
            part.prefix = assemble_fsh_path(parts[:i])
            try:
                if strict:
                    _convert_soft_indices_strict(part, pmap, mmap)
                else:
                    _convert_soft_indices(part, pmap)
            except SoftIndexingError as exc:
                problems.append((idx, str(exc)))

    for idx, (path, caret_path) in enumerate(entries):
        parts = parse_fsh_path(path) if path else []
        convert(parts, path_map, max_map, idx)
        new_path = assemble_fsh_path(parts) if parts else path
        new_caret = caret_path
        if caret_path:
            caret_parts = parse_fsh_path(caret_path)
            convert(
                caret_parts,
                caret_maps.setdefault(new_path, {}),
                caret_max_maps.setdefault(new_path, {}),
                idx,
            )
            new_caret = assemble_fsh_path(caret_parts)
        resolved.append((new_path, new_caret))
    for idx, message in problems:
        logger.debug(f"Soft indexing problem in entry {idx}: {message}")
    return resolved, problems
