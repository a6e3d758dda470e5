"""Turn final model text into a summary and ordered file operations.

Two embeddings of the operation protocol are accepted:

Command blocks::

    <commands>
    createFolder src
    write src/app.py <<EOF
    print("hi")
    EOF
    write --literal README.md
    move old.txt new.txt
    delete tmp
    </commands>

    --- START OF README.md ---
    # Demo
    --- END OF README.md ---

A write without a heredoc takes its content from the single
``--- START OF <path> ---`` block for that path found anywhere in the text.

Structured blocks::

    <changes>
      <change>
        <operation>write</operation>
        <path>a.txt</path>
        <content><![CDATA[hi]]></content>
      </change>
    </changes>

Both are read into the same raw-change form, validated as a whole, and only
then materialized. Any problem anywhere makes the entire text the summary
with no operations.
"""

from __future__ import annotations

import re
import shlex
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from coderelay.models.operations import (
    CreateFolder,
    Delete,
    FileOperation,
    Move,
    ParsedResponse,
    WriteFile,
)
from coderelay.observability.logging import get_logger

log = get_logger(__name__)

THINK_START = "<think>"
THINK_END = "</think>"

# Container tags as seen on a single command line
_REGION_TAG = re.compile(r"</?(?:commands|changes)>")

# Inside <changes>; CDATA sections are matched first so tags inside them are skipped
_STRUCTURED_TOKEN = re.compile(r"<!\[CDATA\[.*?\]\]>|(</?(?:commands|changes)>)", re.DOTALL)

# Outside regions; content blocks and inline code spans are matched first and skipped
_OUTSIDE_TOKEN = re.compile(
    r"^--- START OF [^\n]+? ---[ \t]*\n.*?^--- END OF(?: [^\n]+?)? ---[ \t]*$"
    r"|`[^`\n]*`"
    r"|<(?P<close>/?)(?P<tag>commands|changes)>",
    re.MULTILINE | re.DOTALL,
)

_CONTENT_BLOCK = re.compile(
    r"^--- START OF (?P<path>[^\n]+?) ---[ \t]*\n"
    r"(?P<body>.*?)"
    r"^--- END OF(?: (?P<end>[^\n]+?))? ---[ \t]*$\n?",
    re.MULTILINE | re.DOTALL,
)

_EXCESS_BLANK_LINES = re.compile(r"\n[ \t]*\n(?:[ \t]*\n)+")

# A <content> body made only of CDATA sections and surrounding whitespace
_CDATA_ONLY_CONTENT = re.compile(
    r"<content>\s*((?:<!\[CDATA\[(?:(?!\]\]>).)*\]\]>)+)\s*</content>", re.DOTALL
)
_CDATA_BODY = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
_CDATA_REF = "cdata-ref"

# Accepted operation names mapped to their canonical form
OPERATION_ALIASES: dict[str, str] = {
    "write": "write",
    "writeFile": "write",
    "createFolder": "createFolder",
    "move": "move",
    "delete": "delete",
    "deletePath": "delete",
}

_REQUIRED_FIELDS: dict[str, frozenset[str]] = {
    "write": frozenset({"path", "content"}),
    "createFolder": frozenset({"path"}),
    "move": frozenset({"source", "destination"}),
    "delete": frozenset({"path"}),
}

_OPTIONAL_FIELDS: dict[str, frozenset[str]] = {
    "write": frozenset({"literal"}),
}

_STRUCTURED_FIELDS = frozenset({"operation", "path", "content", "source", "destination", "literal"})


class ProtocolError(ValueError):
    """Malformed command protocol. Never escapes parse_response."""


@dataclass(frozen=True)
class CommandBlock:
    """A ``<commands>`` region; ``start``/``end`` span the tags."""

    start: int
    end: int
    body: str


@dataclass(frozen=True)
class StructuredBlock:
    """A ``<changes>`` region; ``start``/``end`` span the tags."""

    start: int
    end: int
    body: str


Region = CommandBlock | StructuredBlock


@dataclass
class RawChange:
    """One unvalidated operation as read from a region."""

    operation: str
    fields: dict[str, str] = field(default_factory=dict)


def strip_think(text: str | None) -> str:
    """Drop a ``<think>`` reasoning block, keeping what follows the last ``</think>``."""
    if not text:
        return ""
    first_start = text.find(THINK_START)
    last_end = text.rfind(THINK_END)
    if first_start != -1 and last_end != -1 and first_start < last_end:
        return text[last_end + len(THINK_END) :].strip()
    return text


def parse_response(text: str | None) -> ParsedResponse:
    """Parse a model response into a summary and file operations.

    Args:
        text: Completed response text.

    Returns:
        ParsedResponse. Malformed protocol yields the verbatim text as the
        summary and no operations.
    """
    if not text:
        return ParsedResponse()

    try:
        regions = find_regions(text)
        if not regions:
            return ParsedResponse(summary=text)

        consumed: list[tuple[int, int]] = [(r.start, r.end) for r in regions]
        content_blocks = _index_content_blocks(text)

        raw: list[RawChange] = []
        for region in regions:
            if isinstance(region, CommandBlock):
                raw.extend(_read_commands(region, content_blocks, consumed))
            else:
                raw.extend(_read_structured(region))

        for change in raw:
            validate_change(change)
    except ProtocolError as e:
        log.warning("response_protocol_invalid", error=str(e))
        return ParsedResponse(summary=text)

    operations = [materialize(change) for change in raw]
    summary = _summary_outside(text, consumed)
    log.debug("response_parsed", operations=len(operations), summary_chars=len(summary))
    return ParsedResponse(summary=summary, operations=operations)


def find_regions(text: str) -> list[Region]:
    """Locate command and structured regions in source order.

    Container tags only count outside inline code spans and ``START OF``
    content blocks. Inside a region, heredoc bodies and CDATA sections are
    skipped, so file contents may mention the tags freely.

    Raises:
        ProtocolError: On nested, unbalanced or duplicate containers.
    """
    regions: list[Region] = []
    pos = 0
    while True:
        match = _OUTSIDE_TOKEN.search(text, pos)
        if match is None:
            return regions
        pos = match.end()
        name = match.group("tag")
        if name is None:
            # Code span or content block
            continue
        if match.group("close"):
            raise ProtocolError(f"unbalanced </{name}>")

        if name == "commands":
            body_end, pos = _commands_end(text, pos)
            regions.append(CommandBlock(match.start(), pos, text[match.end() : body_end]))
        else:
            if any(isinstance(r, StructuredBlock) for r in regions):
                raise ProtocolError("more than one <changes> container")
            body_end, pos = _changes_end(text, pos)
            regions.append(StructuredBlock(match.start(), pos, text[match.end() : body_end]))


def _commands_end(text: str, start: int) -> tuple[int, int]:
    """Return the body end and region end of the ``<commands>`` opened before ``start``."""
    marker: str | None = None
    line_start = start
    while True:
        newline = text.find("\n", line_start)
        line_end = len(text) if newline == -1 else newline
        line = text[line_start:line_end]
        if marker is not None:
            if line.strip() == marker:
                marker = None
        else:
            tag = _REGION_TAG.search(line)
            if tag is not None:
                if tag.group(0) == "</commands>":
                    return line_start + tag.start(), line_start + tag.end()
                raise ProtocolError(f"{tag.group(0)} inside <commands>")
            marker = _heredoc_marker(line)
        if newline == -1:
            raise ProtocolError("<commands> is never closed")
        line_start = newline + 1


def _changes_end(text: str, start: int) -> tuple[int, int]:
    """Return the body end and region end of the ``<changes>`` opened before ``start``."""
    for match in _STRUCTURED_TOKEN.finditer(text, start):
        if match.group(1) is None:
            # CDATA section
            continue
        if match.group(0) == "</changes>":
            return match.start(), match.end()
        raise ProtocolError(f"{match.group(0)} inside <changes>")
    raise ProtocolError("<changes> is never closed")


def _heredoc_marker(line: str) -> str | None:
    """Heredoc terminator opened by a write command line, if any."""
    try:
        tokens = shlex.split(line)
    except ValueError:
        return None
    if not tokens or OPERATION_ALIASES.get(tokens[0]) != "write":
        return None
    return _split_write_args(tokens[1:])[2] or None


def _split_write_args(args: list[str]) -> tuple[bool, list[str], str | None]:
    """Separate ``--literal`` and a trailing ``<<MARKER`` from write arguments."""
    literal = "--literal" in args
    args = [a for a in args if a != "--literal"]
    marker = None
    if args and args[-1].startswith("<<"):
        marker = args.pop()[2:]
    elif len(args) >= 2 and args[-2] == "<<":
        marker = args.pop()
        args.pop()
    return literal, args, marker


def _index_content_blocks(text: str) -> dict[str, list[re.Match[str]]]:
    blocks: dict[str, list[re.Match[str]]] = {}
    for match in _CONTENT_BLOCK.finditer(text):
        blocks.setdefault(match.group("path").strip(), []).append(match)
    return blocks


def _read_commands(
    region: CommandBlock,
    content_blocks: dict[str, list[re.Match[str]]],
    consumed: list[tuple[int, int]],
) -> list[RawChange]:
    changes: list[RawChange] = []
    lines = region.body.split("\n")
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        i += 1
        if not line:
            continue
        try:
            tokens = shlex.split(line)
        except ValueError as e:
            raise ProtocolError(f"cannot tokenize command {line!r}: {e}") from e

        name, args = tokens[0], tokens[1:]
        operation = OPERATION_ALIASES.get(name)
        if operation is None:
            raise ProtocolError(f"unknown command {name!r}")

        if operation != "write":
            changes.append(_positional_change(name, operation, args))
            continue

        literal, args, marker = _split_write_args(args)
        if marker == "":
            raise ProtocolError("empty heredoc marker")
        if len(args) != 1:
            raise ProtocolError(f"write expects one path, got {args!r}")
        path = args[0]

        if marker is not None:
            content_lines: list[str] = []
            while i < len(lines) and lines[i].strip() != marker:
                content_lines.append(lines[i].rstrip("\r"))
                i += 1
            if i >= len(lines):
                raise ProtocolError(f"unterminated heredoc {marker!r} for {path!r}")
            i += 1
            content = "\n".join(content_lines)
        else:
            content = _take_content_block(path, content_blocks, consumed)

        fields = {"path": path, "content": content}
        if literal:
            fields["literal"] = "true"
        changes.append(RawChange("write", fields))
    return changes


def _positional_change(name: str, operation: str, args: list[str]) -> RawChange:
    if operation == "move":
        if len(args) != 2:
            raise ProtocolError(f"{name} expects source and destination, got {args!r}")
        return RawChange(operation, {"source": args[0], "destination": args[1]})
    if len(args) != 1:
        raise ProtocolError(f"{name} expects one path, got {args!r}")
    return RawChange(operation, {"path": args[0]})


def _take_content_block(
    path: str,
    content_blocks: dict[str, list[re.Match[str]]],
    consumed: list[tuple[int, int]],
) -> str:
    matches = content_blocks.get(path, [])
    if len(matches) != 1:
        raise ProtocolError(
            f"expected exactly one content block for {path!r}, found {len(matches)}"
        )
    match = matches[0]
    end_path = match.group("end")
    if end_path is not None and end_path.strip() != path:
        raise ProtocolError(f"content block for {path!r} ends with {end_path!r}")
    consumed.append((match.start(), match.end()))
    body = match.group("body")
    return body[:-1] if body.endswith("\n") else body


def _lift_cdata_contents(body: str) -> tuple[str, dict[str, str]]:
    """Swap CDATA-only ``<content>`` bodies for references to their exact text.

    ElementTree merges CDATA with the indentation around it, which would leak
    into the written file.
    """
    lifted: dict[str, str] = {}

    def lift(match: re.Match[str]) -> str:
        ref = str(len(lifted))
        lifted[ref] = "".join(_CDATA_BODY.findall(match.group(1)))
        return f'<content {_CDATA_REF}="{ref}"/>'

    return _CDATA_ONLY_CONTENT.sub(lift, body), lifted


def _read_structured(region: StructuredBlock) -> list[RawChange]:
    body, lifted = _lift_cdata_contents(region.body)
    try:
        root = ET.fromstring(f"<changes>{body}</changes>")
    except ET.ParseError as e:
        raise ProtocolError(f"malformed <changes> block: {e}") from e

    if (root.text or "").strip():
        raise ProtocolError("stray text inside <changes>")

    changes: list[RawChange] = []
    for element in root:
        if element.tag != "change":
            raise ProtocolError(f"unexpected <{element.tag}> inside <changes>")
        if (element.tail or "").strip() or (element.text or "").strip():
            raise ProtocolError("stray text around <change>")

        values: dict[str, str] = {}
        for child in element:
            if child.tag not in _STRUCTURED_FIELDS:
                raise ProtocolError(f"unexpected field <{child.tag}>")
            if child.tag in values:
                raise ProtocolError(f"duplicate field <{child.tag}>")
            if len(child):
                raise ProtocolError(f"field <{child.tag}> must not contain elements")
            if (child.tail or "").strip():
                raise ProtocolError("stray text inside <change>")
            value = lifted.get(child.get(_CDATA_REF, ""), child.text or "")
            if child.tag == "content":
                if value.startswith("\n"):
                    value = value[1:]
            else:
                value = value.strip()
            values[child.tag] = value

        if "operation" not in values:
            raise ProtocolError("<change> without <operation>")
        name = values.pop("operation")
        operation = OPERATION_ALIASES.get(name)
        if operation is None:
            raise ProtocolError(f"unknown operation {name!r}")
        changes.append(RawChange(operation, values))
    return changes


def validate_change(change: RawChange) -> None:
    """Check a raw change's fields against its operation.

    Raises:
        ProtocolError: On missing, empty or unexpected fields.
    """
    required = _REQUIRED_FIELDS[change.operation]
    allowed = required | _OPTIONAL_FIELDS.get(change.operation, frozenset())
    present = set(change.fields)

    missing = required - present
    if missing:
        raise ProtocolError(f"{change.operation} is missing {sorted(missing)}")
    unexpected = present - allowed
    if unexpected:
        raise ProtocolError(f"{change.operation} has unexpected {sorted(unexpected)}")

    for name in required - {"content"}:
        if not change.fields[name].strip():
            raise ProtocolError(f"{change.operation} has an empty {name}")
    literal = change.fields.get("literal")
    if literal is not None and literal.strip().lower() not in ("true", "false"):
        raise ProtocolError(f"literal must be true or false, got {literal!r}")


def materialize(change: RawChange) -> FileOperation:
    """Build the typed operation for a validated raw change."""
    f = change.fields
    match change.operation:
        case "write":
            literal = f.get("literal", "false").strip().lower() == "true"
            return WriteFile(path=f["path"].strip(), content=f["content"], literal=literal)
        case "createFolder":
            return CreateFolder(path=f["path"].strip())
        case "move":
            return Move(source=f["source"].strip(), destination=f["destination"].strip())
        case "delete":
            return Delete(path=f["path"].strip())
    raise ProtocolError(f"unknown operation {change.operation!r}")


def _summary_outside(text: str, spans: list[tuple[int, int]]) -> str:
    pieces: list[str] = []
    cursor = 0
    for start, end in sorted(spans):
        if start > cursor:
            pieces.append(text[cursor:start])
        cursor = max(cursor, end)
    pieces.append(text[cursor:])
    return _EXCESS_BLANK_LINES.sub("\n\n", "".join(pieces)).strip()
