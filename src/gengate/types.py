from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

PROMPT_MAX_CHARS = 4000
PRIOR_OUTPUT_MAX_CHARS = 50_000


class ContentKind(str, Enum):
    COMPONENT = "component"
    PAGE = "page"
    HEADLINE = "headline"
    TAGLINE = "tagline"
    BLOG = "blog"
    PRODUCT_DESC = "product_desc"
    EMAIL = "email"
    SOCIAL = "social"
    CODE_SNIPPET = "code_snippet"
    STORY = "story"
    ESSAY = "essay"
    AD_COPY = "ad_copy"
    NARRATION = "narration"

    @property
    def is_markup(self) -> bool:
        return self in MARKUP_KINDS


MARKUP_KINDS = frozenset({ContentKind.COMPONENT, ContentKind.PAGE})


class Tier(str, Enum):
    FAST = "fast"
    QUALITY = "quality"
    SMART = "smart"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    CASUAL = "casual"
    CREATIVE = "creative"
    TECHNICAL = "technical"
    PERSUASIVE = "persuasive"
    PLAYFUL = "playful"


class OutputFormat(str, Enum):
    HTML_TAILWIND = "html_tailwind"
    REACT_TSX = "react_tsx"
    VANILLA_CSS = "vanilla_css"
    MARKDOWN = "markdown"
    PLAIN = "plain"


class Length(str, Enum):
    MICRO = "micro"
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class GenerationRequest(BaseModel):
    """Inbound generation request.

    Validate with ``GenerationRequest.model_validate(data, context=...)``; the
    optional ``prompt_max_chars`` context key overrides the default prompt bound.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    prompt: str = ""
    kind: ContentKind
    tier: Tier = Tier.SMART
    stream: bool = Field(default=False, validation_alias=AliasChoices("stream", "wantsStream", "wants_stream"))
    prior_output: Optional[str] = Field(
        default=None,
        max_length=PRIOR_OUTPUT_MAX_CHARS,
        validation_alias=AliasChoices("prior_output", "priorOutput"),
    )
    refinement_instruction: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("refinement_instruction", "refinementInstruction"),
    )
    tone: Tone = Tone.PROFESSIONAL
    format: Optional[OutputFormat] = None
    length: Length = Length.SHORT

    @field_validator("prompt", "refinement_instruction")
    @classmethod
    def _bound_text(cls, value: Optional[str], info: ValidationInfo) -> Optional[str]:
        if value is None:
            return value
        limit = PROMPT_MAX_CHARS
        if isinstance(info.context, dict):
            limit = int(info.context.get("prompt_max_chars", limit))
        if len(value) > limit:
            raise ValueError(f"must be at most {limit} characters")
        return value

    @model_validator(mode="after")
    def _check_modes(self) -> "GenerationRequest":
        has_prior = bool(self.prior_output)
        has_instruction = bool(self.refinement_instruction)
        if has_prior != has_instruction:
            raise ValueError("prior_output and refinement_instruction must be provided together")
        if not has_prior and not self.prompt:
            raise ValueError("prompt must not be empty")
        return self

    @property
    def is_refinement(self) -> bool:
        return bool(self.prior_output and self.refinement_instruction)

    @property
    def output_format(self) -> OutputFormat:
        if self.format is not None:
            return self.format
        if self.kind.is_markup:
            return OutputFormat.HTML_TAILWIND
        return OutputFormat.PLAIN


@dataclass(frozen=True)
class ProviderCandidate:
    provider: str
    model: str
    position: int


@dataclass(frozen=True)
class ProviderReply:
    content: str
    model: str
    status_code: int = 200


@dataclass(frozen=True)
class GenerationResult:
    content: str
    model_used: str
    provider: str
    duration_ms: int
    hints: tuple[str, ...] = ()
    attempts: int = 1

    @property
    def word_count(self) -> int:
        return len(self.content.split())

    @property
    def char_count(self) -> int:
        return len(self.content)

    def to_payload(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "modelUsed": self.model_used,
            "provider": self.provider,
            "durationMs": self.duration_ms,
            "wordCount": self.word_count,
            "charCount": self.char_count,
            "hints": list(self.hints),
        }


# Stream events. ``done`` is always the final event of a stream.


@dataclass(frozen=True)
class MetaEvent:
    model: str
    provider: str = ""
    event: ClassVar[str] = "meta"

    def to_wire(self) -> dict[str, Any]:
        return {"model": self.model}


@dataclass(frozen=True)
class TokenEvent:
    text: str
    event: ClassVar[str] = "token"

    def to_wire(self) -> dict[str, Any]:
        return {"token": self.text}


@dataclass(frozen=True)
class HintsEvent:
    hints: tuple[str, ...]
    event: ClassVar[str] = "hints"

    def to_wire(self) -> dict[str, Any]:
        return {"hints": list(self.hints)}


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: str
    retryable: bool = True
    event: ClassVar[str] = "error"

    def to_wire(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "retryable": self.retryable}


@dataclass(frozen=True)
class DoneEvent:
    event: ClassVar[str] = "done"

    def to_wire(self) -> str:
        return "[DONE]"


StreamEvent = Union[MetaEvent, TokenEvent, HintsEvent, ErrorEvent, DoneEvent]


@dataclass
class JobRecord:
    request_id: str
    identity: str
    kind: str
    tier: str
    ok: bool
    status: int
    provider: Optional[str] = None
    model: Optional[str] = None
    attempts: int = 0
    duration_ms: int = 0
    stream: bool = False
    hints: List[str] = field(default_factory=list)
    error_code: Optional[str] = None


# Upstream response schemas. Adapters validate every payload against one of
# these before touching it; a mismatch is a MalformedUpstreamResponse.


class _OpenAIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: Optional[str] = None


class _OpenAIChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    message: _OpenAIMessage
    finish_reason: Optional[str] = None


class OpenAIChatCompletion(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    choices: List[_OpenAIChoice] = Field(min_length=1)

    @property
    def text(self) -> str:
        return self.choices[0].message.content or ""


class _OpenAIDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: Optional[str] = None


class _OpenAIStreamChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: _OpenAIDelta = Field(default_factory=_OpenAIDelta)


class OpenAIStreamChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    choices: List[_OpenAIStreamChoice] = Field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].delta.content or ""


class _AnthropicBlock(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None


class AnthropicMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    content: List[_AnthropicBlock]

    @property
    def text(self) -> str:
        return "".join(block.text or "" for block in self.content if block.type == "text")


class _AnthropicDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    text: Optional[str] = None


class AnthropicStreamEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    delta: Optional[_AnthropicDelta] = None
    error: Optional[Dict[str, Any]] = None


class _OllamaMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: str = ""


class OllamaChatChunk(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    message: Optional[_OllamaMessage] = None
    done: bool = False
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return self.message.content if self.message is not None else ""
