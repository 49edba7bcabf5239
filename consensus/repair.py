"""
JSON repair for provider payloads.

Providers frequently return fenced, prose-wrapped, truncated or otherwise
malformed JSON. Repair is an explicitly ordered list of small passes, each a
pure function ``str -> RepairOutcome`` that is idempotent on its own output.
Passes are applied cumulatively until the text parses or the budget runs out.

When every pass has been spent, :func:`extract_partial_payload` salvages
whatever item-shaped objects can still be found.

Usage:
    from consensus.repair import parse_with_repair, extract_partial_payload

    outcome = parse_with_repair(raw_text)        # raises SchemaInvalid when exhausted
    data = outcome.parsed
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from core.errors import SchemaInvalid

logger = logging.getLogger(__name__)

DEFAULT_REPAIR_BUDGET = 4

# Byte-order mark and zero-width characters some providers emit
_INVISIBLE = re.compile('[﻿​‌‍⁠]')
_FENCE = re.compile(r'```(?:json|JSON)?\s*([\s\S]*?)\s*```')
_OPEN_FENCE = re.compile(r'^```(?:json|JSON)?\s*')

_OPENERS = {'{': '}', '[': ']'}
_CLOSERS = {'}': '{', ']': '['}


@dataclass(frozen=True)
class RepairOutcome:
    """Result of one repair pass (or of a whole repair run)."""
    text: str
    parsed: Any = None
    changed: bool = False
    reason: str = ""
    passes: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.parsed is not None


def try_parse(text: str) -> Any:
    """json.loads or None; the result must be an object or array."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, (dict, list)) else None


def _outcome(original: str, repaired: str, reason: str) -> RepairOutcome:
    changed = repaired != original
    return RepairOutcome(
        text=repaired,
        parsed=try_parse(repaired),
        changed=changed,
        reason=reason if changed else "",
    )


# =============================================================================
# Pass 1: isolate the payload
# =============================================================================

def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index just past the bracket that closes text[start], or None if it never closes."""
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
            if depth == 0:
                return i + 1
    return None


_ARRAY_OF_OBJECTS = re.compile(r'\[\s*[{\]]')


def _payload_start(text: str) -> Optional[int]:
    """First '{', unless an array of objects opens earlier ("see [3] below" is prose)."""
    brace = text.find('{')
    array = _ARRAY_OF_OBJECTS.search(text)
    if array and (brace < 0 or array.start() < brace):
        return array.start()
    return brace if brace >= 0 else None


def isolate_payload(text: str) -> RepairOutcome:
    """Strip invisible characters, code fences and surrounding prose."""
    out = _INVISIBLE.sub('', text).strip()

    fenced = _FENCE.search(out)
    if fenced:
        out = fenced.group(1).strip()
    else:
        # Truncated reply: opening fence with no closing one
        out = _OPEN_FENCE.sub('', out)

    start = _payload_start(out)
    if start is not None:
        end = _balanced_end(out, start)
        out = out[start:end] if end is not None else out[start:]

    return _outcome(text, out.strip(), "isolate_payload")


# =============================================================================
# Pass 2: trailing separators
# =============================================================================

def strip_trailing_separators(text: str) -> RepairOutcome:
    """Remove commas that directly precede a closing bracket (outside strings)."""
    out: List[str] = []
    in_string = False
    escape = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == ',':
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in '}]':
                i += 1
                continue
        out.append(ch)
        i += 1
    return _outcome(text, ''.join(out), "strip_trailing_separators")


# =============================================================================
# Pass 3: missing separators
# =============================================================================

def _ends_value(ch: str) -> bool:
    return ch in '"}]' or ch.isalnum()


def insert_missing_separators(text: str) -> RepairOutcome:
    """Insert a comma between adjacent values: a value end followed by '"', '{' or '['."""
    out: List[str] = []
    in_string = False
    escape = False
    prev_sig = ''
    for ch in text:
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
                prev_sig = '"'
            continue
        if ch.isspace():
            out.append(ch)
            continue
        if ch in '"{[' and prev_sig and _ends_value(prev_sig):
            # Keep the comma on the value's line
            k = len(out)
            while k > 0 and out[k - 1].isspace():
                k -= 1
            out.insert(k, ',')
        if ch == '"':
            in_string = True
        out.append(ch)
        prev_sig = ch
    return _outcome(text, ''.join(out), "insert_missing_separators")


# =============================================================================
# Pass 4: bracket balance
# =============================================================================

@dataclass
class _ScanState:
    out: List[str] = field(default_factory=list)
    stack: List[str] = field(default_factory=list)
    in_string: bool = False
    escape: bool = False


def _scan_dropping_strays(text: str) -> _ScanState:
    state = _ScanState()
    for ch in text:
        if state.in_string:
            state.out.append(ch)
            if state.escape:
                state.escape = False
            elif ch == '\\':
                state.escape = True
            elif ch == '"':
                state.in_string = False
            continue
        if ch == '"':
            state.in_string = True
        elif ch in _OPENERS:
            state.stack.append(ch)
        elif ch in _CLOSERS:
            if not state.stack or state.stack[-1] != _CLOSERS[ch]:
                continue  # unmatched closer
            state.stack.pop()
        state.out.append(ch)
    return state


# A key with no value yet: after '{' or ',' inside an object
_TAIL_KEY = re.compile(r'(?<=[{,])\s*"(?:[^"\\]|\\.)*"\s*:?\s*$')
# A cut-off literal: "tr", "12.", "-", "1e"
_TAIL_VALUE_FRAGMENT = re.compile(r':\s*([A-Za-z]+|-?[\d.]*[eE.+-])$')
_LITERALS = ('true', 'false', 'null')


def _trim_tail(body: str, stack: List[str]) -> str:
    """Drop fragments a truncated reply leaves at the end: separators, keys, partial literals."""
    while True:
        trimmed = body.rstrip()
        if trimmed.endswith(','):
            trimmed = trimmed[:-1]
        elif stack and stack[-1] == '{':
            fragment = _TAIL_VALUE_FRAGMENT.search(trimmed)
            if fragment and fragment.group(1) not in _LITERALS:
                trimmed = trimmed[:fragment.start() + 1]
            else:
                key = _TAIL_KEY.search(trimmed)
                if key:
                    trimmed = trimmed[:key.start()]
        if trimmed == body:
            return body
        body = trimmed


def balance_brackets(text: str) -> RepairOutcome:
    """Drop unmatched closers, close a cut-off string, trim the dangling tail, append closers."""
    state = _scan_dropping_strays(text)
    body = ''.join(state.out)

    if state.in_string:
        if state.escape:
            body = body[:-1]
        body += '"'

    body = _trim_tail(body, state.stack)
    # Trimming only removes whole tokens, so the stack is unchanged
    body += ''.join(_OPENERS[o] for o in reversed(state.stack))
    return _outcome(text, body, "balance_brackets")


REPAIR_PASSES: List[Tuple[str, Callable[[str], RepairOutcome]]] = [
    ("isolate_payload", isolate_payload),
    ("strip_trailing_separators", strip_trailing_separators),
    ("insert_missing_separators", insert_missing_separators),
    ("balance_brackets", balance_brackets),
]


def parse_with_repair(text: str, budget: int = DEFAULT_REPAIR_BUDGET) -> RepairOutcome:
    """
    Parse a provider payload, repairing it if needed.

    Args:
        text: Raw provider output
        budget: Maximum number of repair passes to apply

    Returns:
        RepairOutcome with ``parsed`` set; ``passes`` lists the passes that changed the text.

    Raises:
        SchemaInvalid: repairable=False when the budget is exhausted without a parse.
    """
    parsed = try_parse(text) if text else None
    if parsed is not None:
        return RepairOutcome(text=text, parsed=parsed)

    current = text or ""
    fired: List[str] = []
    for name, repair_pass in REPAIR_PASSES[:max(0, budget)]:
        outcome = repair_pass(current)
        if outcome.changed:
            fired.append(name)
            current = outcome.text
        if outcome.ok:
            logger.debug(f"Payload parsed after repair passes: {', '.join(fired) or 'none'}")
            return RepairOutcome(
                text=current,
                parsed=outcome.parsed,
                changed=bool(fired),
                reason=", ".join(fired),
                passes=tuple(fired),
            )

    raise SchemaInvalid(
        "Payload could not be parsed after repair",
        repairable=False,
        reasons=[f"applied: {', '.join(fired) or 'none'}", f"length: {len(text or '')}"],
    )


# =============================================================================
# Partial extraction
# =============================================================================

DEFAULT_MAX_OBJECT_CHARS = 20_000
DEFAULT_MAX_PARTIAL_ITEMS = 2_000
_MAX_DESCENT = 3

_ITEM_MARKERS = {"name", "quantity", "unit", "item", "item_name", "itemName", "description"}
_ISSUE_MARKERS = {"severity", "description", "recommendation", "impact"}

_FIELD_PATTERNS = {
    "name": re.compile(r'"(?:name|item_name|itemName)"\s*:\s*"((?:[^"\\]|\\.){0,300})"'),
    "description": re.compile(r'"description"\s*:\s*"((?:[^"\\]|\\.){0,1000})"'),
    "quantity": re.compile(r'"(?:quantity|qty)"\s*:\s*"?(-?[\d,]*\.?\d+)'),
    "unit": re.compile(r'"unit"\s*:\s*"([^"]{0,20})"'),
    "unit_cost": re.compile(r'"(?:unit_cost|unitCost)"\s*:\s*"?\$?(-?[\d,]*\.?\d+)'),
    "category": re.compile(r'"category"\s*:\s*"([^"]{0,40})"'),
    "location": re.compile(r'"location"\s*:\s*"((?:[^"\\]|\\.){0,300})"'),
    "severity": re.compile(r'"severity"\s*:\s*"([^"]{0,20})"'),
}

_ARRAY_KEY = r'"{key}"\s*:\s*\['
_OBJECT_KEY = r'"{key}"\s*:\s*\{{'


@dataclass
class PartialPayload:
    """What partial extraction salvaged from an unparseable payload."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    issues: List[Dict[str, Any]] = field(default_factory=list)
    quality_analysis: Optional[Dict[str, Any]] = None
    notes: List[str] = field(default_factory=list)


def _object_spans(text: str, start: int, end: int) -> Iterator[Tuple[int, int]]:
    """Spans of the outermost objects in text[start:end], looking through arrays.

    Stops where the enclosing container closes. A final object that never
    closes is yielded up to ``end``.
    """
    stack: List[str] = []
    braces_open = 0
    in_string = False
    escape = False
    obj_start = None
    for i in range(start, end):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == '\\':
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == '[':
            stack.append(ch)
        elif ch == '{':
            if braces_open == 0:
                obj_start = i
            stack.append(ch)
            braces_open += 1
        elif ch in _CLOSERS:
            if not stack:
                return
            if stack[-1] != _CLOSERS[ch]:
                continue
            stack.pop()
            if ch == '}':
                braces_open -= 1
                if braces_open == 0 and obj_start is not None:
                    yield obj_start, i + 1
                    obj_start = None
    if obj_start is not None:
        yield obj_start, end


def _repair_object(fragment: str) -> Optional[Dict[str, Any]]:
    parsed = try_parse(fragment)
    if isinstance(parsed, dict):
        return parsed
    current = fragment
    for _name, repair_pass in REPAIR_PASSES[1:]:
        outcome = repair_pass(current)
        current = outcome.text
        if isinstance(outcome.parsed, dict):
            return outcome.parsed
    return None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except (json.JSONDecodeError, ValueError):
        return value


def _scrape_fields(fragment: str, wanted: Tuple[str, ...]) -> Dict[str, Any]:
    scraped: Dict[str, Any] = {}
    for key in wanted:
        m = _FIELD_PATTERNS[key].search(fragment)
        if m:
            scraped[key] = _unescape(m.group(1))
    return scraped


def _collect(text: str, start: int, end: int, markers: set, required: set,
             wanted: Tuple[str, ...], limit: int, max_chars: int, depth: int = 0) -> List[Dict[str, Any]]:
    """Collect shaped objects from text[start:end], descending into non-matching containers."""
    found: List[Dict[str, Any]] = []
    for s, e in _object_spans(text, start, end):
        if len(found) >= limit:
            break
        fragment = text[s:min(e, s + max_chars)]
        obj = _repair_object(fragment)
        if obj is None:
            obj = _scrape_fields(fragment, wanted)
        if obj and markers & set(obj) and required <= set(obj):
            found.append(obj)
            continue
        if depth < _MAX_DESCENT and e - s > 2:
            found.extend(_collect(text, s + 1, e, markers, required, wanted,
                                  limit - len(found), max_chars, depth + 1))
    return found[:limit]


def _array_region(text: str, keys: Tuple[str, ...]) -> Optional[int]:
    for key in keys:
        m = re.search(_ARRAY_KEY.format(key=key), text)
        if m:
            return m.end()
    return None


def extract_partial_payload(
    text: str,
    max_items: int = DEFAULT_MAX_PARTIAL_ITEMS,
    max_object_chars: int = DEFAULT_MAX_OBJECT_CHARS,
) -> PartialPayload:
    """
    Salvage items, issues and quality analysis from an unparseable payload.

    Items are searched inside an ``"items"`` array when one is present,
    otherwise anywhere in the text. Each candidate object is parsed directly,
    then through the per-object repair passes, and finally by bounded field
    regexes.
    """
    result = PartialPayload()
    if not text:
        return result
    text = isolate_payload(text).text

    items_start = _array_region(text, ("items", "takeoff_items", "takeoffItems"))
    if items_start is not None:
        result.items = _collect(text, items_start, len(text), _ITEM_MARKERS, set(),
                                ("name", "description", "quantity", "unit", "unit_cost",
                                 "category", "location"),
                                max_items, max_object_chars)
        result.notes.append(f"items array scanned: {len(result.items)} recovered")
    else:
        result.items = _collect(text, 0, len(text), _ITEM_MARKERS, {"quantity"},
                                ("name", "description", "quantity", "unit", "unit_cost",
                                 "category", "location"),
                                max_items, max_object_chars)
        result.notes.append(f"free scan: {len(result.items)} item-shaped objects recovered")

    issues_start = _array_region(text, ("issues", "quality_issues", "qualityIssues"))
    if issues_start is not None:
        result.issues = _collect(text, issues_start, len(text), _ISSUE_MARKERS, {"description"},
                                 ("severity", "description", "category", "location"),
                                 max_items, max_object_chars)

    for key in ("quality_analysis", "qualityAnalysis"):
        m = re.search(_OBJECT_KEY.format(key=key), text)
        if m:
            qa_start = m.end() - 1
            qa_end = _balanced_end(text, qa_start) or len(text)
            qa = _repair_object(text[qa_start:min(qa_end, qa_start + max_object_chars)])
            if qa:
                result.quality_analysis = qa
            break

    logger.debug(f"Partial extraction: {len(result.items)} items, {len(result.issues)} issues")
    return result
