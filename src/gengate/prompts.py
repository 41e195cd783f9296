"""Chat message assembly for a generation request.

The gateway treats prompt text as opaque; this module only wraps it with the
system instruction for its content kind, tone, and output format.
"""

from __future__ import annotations

from typing import Any, Dict, List

from .types import ContentKind, GenerationRequest, Length, OutputFormat

MAX_TOKENS: Dict[Length, int] = {
    Length.MICRO: 80,
    Length.SHORT: 350,
    Length.MEDIUM: 800,
    Length.LONG: 1600,
}
MARKUP_MAX_TOKENS = 4096

SYSTEM_PROMPTS: Dict[ContentKind, str] = {
    ContentKind.HEADLINE: (
        "You are a headline writer. Produce a single headline of fewer than 15 words. "
        "Reply with the headline only."
    ),
    ContentKind.TAGLINE: (
        "You are a branding specialist. Produce a single tagline of fewer than 10 words. "
        "Reply with the tagline only."
    ),
    ContentKind.BLOG: (
        "You are a content writer. Write a structured blog post with an introduction, "
        "clear sections and a conclusion."
    ),
    ContentKind.PRODUCT_DESC: (
        "You are a conversion copywriter. Describe the product by its benefits and features."
    ),
    ContentKind.EMAIL: (
        "You are an email marketer. Write an email with a subject line, a body and one call to action."
    ),
    ContentKind.SOCIAL: (
        "You are a social media strategist. Write one post suited for sharing, with relevant hashtags."
    ),
    ContentKind.CODE_SNIPPET: (
        "You are a senior software engineer. Provide clean, commented code and brief usage notes."
    ),
    ContentKind.STORY: (
        "You are a fiction writer. Write a story with vivid characters, a conflict and a resolution."
    ),
    ContentKind.ESSAY: (
        "You are an academic writer. Write an essay with a thesis, supporting arguments and a conclusion."
    ),
    ContentKind.AD_COPY: (
        "You are a direct response copywriter. Write ad copy that earns attention and drives action."
    ),
    ContentKind.NARRATION: (
        "You are a voice-over scriptwriter. Write a narration script meant to be read aloud: "
        "plain sentences, no stage directions, no markup."
    ),
}

_MARKUP_RULES = (
    "You are a front-end developer and UI designer.\n"
    "- Output only the code. No explanations and no markdown fences.\n"
    "- The code must be self-contained and render standalone.\n"
    "- Every image needs alt text and every form control needs a label.\n"
    "- Keep text contrast at WCAG AA or better.\n"
    "- Every interactive element needs hover and focus states."
)

FORMAT_RULES: Dict[OutputFormat, str] = {
    OutputFormat.HTML_TAILWIND: (
        "Format: a complete HTML document styled with Tailwind CSS from the CDN, "
        "from <!DOCTYPE html> to </html>, with a lang attribute on <html>."
    ),
    OutputFormat.REACT_TSX: (
        "Format: one React TSX file exporting a default function component styled with "
        "Tailwind classes, with typed props and inline mock data."
    ),
    OutputFormat.VANILLA_CSS: (
        "Format: a complete HTML document with a single <style> block, CSS custom properties "
        "for theming and no JavaScript unless essential."
    ),
    OutputFormat.MARKDOWN: "Format the answer as Markdown.",
    OutputFormat.PLAIN: "Format the answer as plain text without Markdown.",
}


def system_prompt(request: GenerationRequest) -> str:
    fmt = request.output_format
    if request.kind.is_markup:
        return f"{_MARKUP_RULES}\n\n{FORMAT_RULES[fmt]}"
    parts = [SYSTEM_PROMPTS[request.kind], f"Tone: {request.tone.value}."]
    if request.format is not None:
        parts.append(FORMAT_RULES[fmt])
    return "\n".join(parts)


def build_messages(request: GenerationRequest) -> List[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt(request)}]
    if request.is_refinement:
        if request.prompt:
            messages.append({"role": "user", "content": request.prompt})
        messages.append({"role": "assistant", "content": request.prior_output or ""})
        messages.append(
            {
                "role": "user",
                "content": (
                    "Revise the previous output. Return the complete revised version only.\n"
                    f"Change requested: {request.refinement_instruction}"
                ),
            }
        )
        return messages
    messages.append({"role": "user", "content": request.prompt})
    return messages


def max_tokens_for(request: GenerationRequest) -> int:
    if request.kind.is_markup:
        return MARKUP_MAX_TOKENS
    return MAX_TOKENS[request.length]


def generation_options(
    request: GenerationRequest,
    *,
    temperature: float = 0.8,
    markup_temperature: float = 0.3,
) -> Dict[str, Any]:
    return {
        "max_tokens": max_tokens_for(request),
        "temperature": markup_temperature if request.kind.is_markup else temperature,
    }
