"""
Decode a conversation response into a thinking trace and ordered content.

The provider returns `outputs`, a list of items tagged by `type`. Each known
wire shape is decoded into one of the dataclasses below; anything else
becomes `Unrecognized` so it can be logged and inspected instead of silently
dropped. The order of `segments` is the order of the provider output and is
preserved through fold-in.
"""

import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

IMAGE_OUTPUT_TYPES = {"image", "image_generation", "image.output"}
IMAGE_PART_TYPES = {"image", "image_reference", "image.output"}
TOOL_EXECUTION_TYPES = {"tool.execution", "tool_exec", "tool.execution.result"}
REFERENCE_TYPES = {"tool_reference", "web_reference", "tool.reference"}
TOOL_FILE_TYPES = {"tool_file", "tool.file", "tool_file_chunk"}
DEFAULT_IMAGE_MIME = "image/png"


@dataclass
class TextSegment:
    text: str


@dataclass
class ImageSegment:
    """Image delivered inline (`data`) or by URL."""
    url: str | None = None
    data: str | None = None
    mime_type: str = DEFAULT_IMAGE_MIME
    filename: str | None = None


@dataclass
class GeneratedFileSegment:
    """File produced by a provider tool, downloadable by id."""
    file_id: str
    filename: str | None = None
    mime_type: str | None = None


@dataclass
class ToolExecution:
    name: str
    arguments: str

    def render(self) -> str:
        return f"Tool: {self.name} → {self.arguments}"


@dataclass
class Reference:
    title: str | None = None
    url: str | None = None
    tool: str | None = None
    description: str | None = None

    def render(self) -> str:
        line = "WebRef"
        if self.title:
            line += f": {self.title}"
        if self.url:
            line += f" ({self.url})"
        if self.tool:
            line += f" [via {self.tool}]"
        if self.description:
            line += f" - {self.description}"
        return line


@dataclass
class Unrecognized:
    raw: object


Segment = TextSegment | ImageSegment | GeneratedFileSegment


@dataclass
class DecodedResponse:
    thinking: list[str] = field(default_factory=list)
    segments: list[Segment] = field(default_factory=list)
    unrecognized: list[Unrecognized] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.segments and not self.thinking


def _first(item: dict, *keys: str):
    for key in keys:
        value = item.get(key)
        if value is not None:
            return value
    return None


def _render_arguments(arguments) -> str:
    if isinstance(arguments, str):
        try:
            return json.dumps(json.loads(arguments), ensure_ascii=False)
        except ValueError:
            return arguments
    if isinstance(arguments, (dict, list)):
        try:
            return json.dumps(arguments, ensure_ascii=False)
        except (TypeError, ValueError):
            return str(arguments)
    return "" if arguments is None else str(arguments)


def _image_segment(item: dict) -> ImageSegment:
    return ImageSegment(
        url=_first(item, "url", "src", "location"),
        data=_first(item, "data", "base64", "b64"),
        mime_type=_first(item, "mime", "mime_type", "file_type") or DEFAULT_IMAGE_MIME,
        filename=_first(item, "filename", "fileName", "file_name"),
    )


def decode_tool_execution(item: dict) -> ToolExecution:
    name = _first(item, "name", "tool") or "tool"
    return ToolExecution(name=str(name), arguments=_render_arguments(item.get("arguments")))


def decode_part(part) -> Segment | Reference | Unrecognized | list:
    """Decode one element of a message.output content array."""
    if isinstance(part, str):
        return TextSegment(part)
    if not isinstance(part, dict):
        return Unrecognized(part)

    kind = part.get("type")
    if kind == "text" and isinstance(part.get("text"), str):
        return TextSegment(part["text"])
    if kind in REFERENCE_TYPES:
        return Reference(
            title=_first(part, "title", "name"),
            url=part.get("url"),
            tool=part.get("tool"),
            description=part.get("description"),
        )
    if kind in IMAGE_PART_TYPES:
        return _image_segment(part)
    if kind in TOOL_FILE_TYPES or part.get("file_id") or part.get("fileId"):
        file_id = _first(part, "file_id", "fileId", "file")
        if not file_id:
            return Unrecognized(part)
        return GeneratedFileSegment(
            file_id=str(file_id),
            filename=_first(part, "file_name", "fileName", "name"),
            mime_type=_first(part, "file_type", "fileType"),
        )
    if isinstance(part.get("text"), str):
        return TextSegment(part["text"])
    if isinstance(part.get("content"), str):
        return TextSegment(part["content"])
    if isinstance(part.get("content"), list):
        return [_decode_nested(sub) for sub in part["content"]]
    return Unrecognized(part)


def _decode_nested(sub) -> Segment | Unrecognized:
    if isinstance(sub, str):
        return TextSegment(sub)
    if isinstance(sub, dict):
        if isinstance(sub.get("text"), str):
            return TextSegment(sub["text"])
        if sub.get("type") in IMAGE_PART_TYPES:
            return _image_segment(sub)
    return Unrecognized(sub)


def _message_parts(content) -> list:
    if isinstance(content, str):
        return [TextSegment(content)]
    if isinstance(content, list):
        return [decode_part(part) for part in content if part]
    if isinstance(content, dict):
        if isinstance(content.get("text"), str):
            return [TextSegment(content["text"])]
        if isinstance(content.get("content"), str):
            return [TextSegment(content["content"])]
        if isinstance(content.get("content"), list):
            return [_decode_nested(sub) for sub in content["content"] if sub]
    if content is None:
        return []
    return [Unrecognized(content)]


def _collect(decoded: DecodedResponse, value) -> None:
    if isinstance(value, list):
        for sub in value:
            _collect(decoded, sub)
    elif isinstance(value, Reference):
        decoded.thinking.append(value.render())
    elif isinstance(value, Unrecognized):
        decoded.unrecognized.append(value)
    else:
        decoded.segments.append(value)


def decode_response(response) -> DecodedResponse:
    """Decode a conversation response; missing or malformed fields yield no content."""
    decoded = DecodedResponse()
    if not isinstance(response, dict) or not isinstance(response.get("outputs"), list):
        return decoded

    for output in response["outputs"]:
        if not isinstance(output, dict) or not output.get("type"):
            decoded.unrecognized.append(Unrecognized(output))
            continue

        kind = output["type"]
        if kind in IMAGE_OUTPUT_TYPES:
            decoded.segments.append(_image_segment(output))
        elif kind in TOOL_EXECUTION_TYPES:
            decoded.thinking.append(decode_tool_execution(output).render())
        elif kind == "message.output":
            _collect(decoded, _message_parts(output.get("content")))
        else:
            decoded.unrecognized.append(Unrecognized(output))

    if decoded.unrecognized:
        logger.debug("Ignored %d unrecognized output item(s)", len(decoded.unrecognized))
    return decoded
