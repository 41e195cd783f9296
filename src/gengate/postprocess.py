"""Output normalization and lightweight quality hints.

``normalize`` removes the code fence a model wraps around its answer.
``analyze`` runs a fixed set of independent heuristics over the finished
output. Each check yields at most one hint; a check that fails is logged and
contributes nothing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import Callable, Dict, List, Optional, Sequence

from .types import ContentKind

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^\s*```[\w.+#-]*\s*$")
_FENCE_CLOSE = re.compile(r"^\s*```\s*$")


def _unwrap_once(text: str) -> Optional[str]:
    lines = text.strip().split("\n")
    if len(lines) < 2:
        return None
    if not (_FENCE_OPEN.match(lines[0]) and _FENCE_CLOSE.match(lines[-1])):
        return None
    return "\n".join(lines[1:-1]).strip()


def normalize(raw: str) -> str:
    """Strip a wrapping code fence. Text without one is returned unchanged.

    Nested wrappers are removed until none is left, so applying the function
    twice gives the same result as applying it once.
    """
    text = raw
    while True:
        inner = _unwrap_once(text)
        if inner is None:
            return text
        text = inner


# Markup scanning


_IGNORED_INPUT_TYPES = frozenset({"hidden", "submit", "button", "reset", "image"})
_NAMING_ATTRS = ("aria-label", "aria-labelledby", "title")


@dataclass
class _Interactive:
    tag: str
    named: bool
    text: List[str] = field(default_factory=list)


@dataclass
class MarkupScan:
    images_missing_alt: int = 0
    controls: List[tuple[Optional[str], bool]] = field(default_factory=list)
    label_targets: set[str] = field(default_factory=set)
    unnamed_interactive: int = 0
    styled_elements: List[Dict[str, str]] = field(default_factory=list)
    html_tags: int = 0
    html_missing_lang: int = 0

    @property
    def unlabeled_controls(self) -> int:
        return sum(
            1
            for control_id, named in self.controls
            if not named and not (control_id and control_id in self.label_targets)
        )


def _has_name(attrs: Dict[str, str]) -> bool:
    return any(attrs.get(name, "").strip() for name in _NAMING_ATTRS)


class _MarkupScanner(HTMLParser):
    # JSX attributes arrive lowercased: className -> classname, htmlFor -> htmlfor.

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.scan = MarkupScan()
        self._label_depth = 0
        self._open: List[_Interactive] = []

    def handle_starttag(self, tag: str, attrs_list) -> None:
        attrs = {name: (value or "") for name, value in attrs_list}
        self._inspect(tag, attrs)
        if tag == "label":
            self._label_depth += 1
        elif tag == "button" or (tag == "a" and "href" in attrs):
            self._open.append(_Interactive(tag=tag, named=_has_name(attrs)))

    def handle_startendtag(self, tag: str, attrs_list) -> None:
        attrs = {name: (value or "") for name, value in attrs_list}
        self._inspect(tag, attrs)
        if tag == "button" or (tag == "a" and "href" in attrs):
            if not _has_name(attrs):
                self.scan.unnamed_interactive += 1

    def handle_endtag(self, tag: str) -> None:
        if tag == "label" and self._label_depth:
            self._label_depth -= 1
            return
        if tag not in ("button", "a"):
            return
        for index in range(len(self._open) - 1, -1, -1):
            if self._open[index].tag == tag:
                self._finish(self._open.pop(index))
                return

    def handle_data(self, data: str) -> None:
        if data.strip():
            for element in self._open:
                element.text.append(data)

    def close(self) -> None:
        super().close()
        while self._open:
            self._finish(self._open.pop())

    def _finish(self, element: _Interactive) -> None:
        if not element.named and not "".join(element.text).strip():
            self.scan.unnamed_interactive += 1

    def _inspect(self, tag: str, attrs: Dict[str, str]) -> None:
        scan = self.scan
        if tag == "html":
            scan.html_tags += 1
            if not attrs.get("lang", "").strip():
                scan.html_missing_lang += 1
        elif tag == "img":
            if "alt" not in attrs:
                scan.images_missing_alt += 1
            elif attrs["alt"].strip():
                for element in self._open:
                    element.named = True
        elif tag == "svg" and _has_name(attrs):
            for element in self._open:
                element.named = True
        elif tag == "label":
            target = attrs.get("for") or attrs.get("htmlfor")
            if target:
                scan.label_targets.add(target.strip())
        if tag in ("input", "select", "textarea"):
            if tag == "input" and attrs.get("type", "text").strip().lower() in _IGNORED_INPUT_TYPES:
                pass
            else:
                named = self._label_depth > 0 or _has_name(attrs)
                scan.controls.append((attrs.get("id", "").strip() or None, named))
        classes = attrs.get("class") or attrs.get("classname")
        style = attrs.get("style")
        if classes or style:
            scan.styled_elements.append({"class": classes or "", "style": style or ""})


def scan_markup(text: str) -> MarkupScan:
    scanner = _MarkupScanner()
    scanner.feed(text)
    scanner.close()
    return scanner.scan


# Contrast


# Tailwind v3 palette subset covering the neutrals and the accents most often
# paired with white or dark text.
TAILWIND_COLORS: Dict[str, str] = {
    "white": "#ffffff",
    "black": "#000000",
    "gray-50": "#f9fafb", "gray-100": "#f3f4f6", "gray-200": "#e5e7eb", "gray-300": "#d1d5db",
    "gray-400": "#9ca3af", "gray-500": "#6b7280", "gray-600": "#4b5563", "gray-700": "#374151",
    "gray-800": "#1f2937", "gray-900": "#111827", "gray-950": "#030712",
    "slate-50": "#f8fafc", "slate-100": "#f1f5f9", "slate-200": "#e2e8f0", "slate-300": "#cbd5e1",
    "slate-400": "#94a3b8", "slate-500": "#64748b", "slate-600": "#475569", "slate-700": "#334155",
    "slate-800": "#1e293b", "slate-900": "#0f172a", "slate-950": "#020617",
    "zinc-50": "#fafafa", "zinc-100": "#f4f4f5", "zinc-200": "#e4e4e7", "zinc-300": "#d4d4d8",
    "zinc-400": "#a1a1aa", "zinc-500": "#71717a", "zinc-600": "#52525b", "zinc-700": "#3f3f46",
    "zinc-800": "#27272a", "zinc-900": "#18181b", "zinc-950": "#09090b",
    "neutral-50": "#fafafa", "neutral-100": "#f5f5f5", "neutral-200": "#e5e5e5", "neutral-300": "#d4d4d4",
    "neutral-400": "#a3a3a3", "neutral-500": "#737373", "neutral-600": "#525252", "neutral-700": "#404040",
    "neutral-800": "#262626", "neutral-900": "#171717", "neutral-950": "#0a0a0a",
    "yellow-100": "#fef9c3", "yellow-200": "#fef08a", "yellow-300": "#fde047", "yellow-400": "#facc15",
    "yellow-500": "#eab308",
    "amber-100": "#fef3c7", "amber-200": "#fde68a", "amber-300": "#fcd34d", "amber-400": "#fbbf24",
    "amber-500": "#f59e0b",
    "blue-400": "#60a5fa", "blue-500": "#3b82f6", "blue-600": "#2563eb", "blue-700": "#1d4ed8",
    "indigo-400": "#818cf8", "indigo-500": "#6366f1", "indigo-600": "#4f46e5", "indigo-700": "#4338ca",
}

MIN_CONTRAST_RATIO = 4.5

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")
_STYLE_DECL = re.compile(r"(?P<prop>[a-zA-Z-]+)\s*:\s*(?P<value>[^;]+)")


def _expand_hex(value: str) -> Optional[str]:
    value = value.strip()
    if not _HEX_COLOR.match(value):
        return None
    if len(value) == 4:
        value = "#" + "".join(ch * 2 for ch in value[1:])
    return value.lower()


def _relative_luminance(hex_color: str) -> float:
    channels = []
    for offset in (1, 3, 5):
        c = int(hex_color[offset:offset + 2], 16) / 255.0
        channels.append(c / 12.92 if c <= 0.03928 else ((c + 0.055) / 1.055) ** 2.4)
    r, g, b = channels
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def contrast_ratio(foreground: str, background: str) -> float:
    lighter, darker = sorted(
        (_relative_luminance(foreground), _relative_luminance(background)), reverse=True
    )
    return (lighter + 0.05) / (darker + 0.05)


def _token_color(token: str, prefix: str) -> Optional[str]:
    # Variant tokens (hover:, md:, dark:) do not describe the resting state.
    if ":" in token or not token.startswith(prefix):
        return None
    name = token[len(prefix):].split("/", 1)[0]
    return TAILWIND_COLORS.get(name)


def _class_pair(classes: str) -> Optional[tuple[str, str]]:
    foreground = background = None
    for token in classes.split():
        foreground = _token_color(token, "text-") or foreground
        background = _token_color(token, "bg-") or background
    if foreground and background:
        return foreground, background
    return None


def _style_pair(style: str) -> Optional[tuple[str, str]]:
    declarations = {
        match.group("prop").strip().lower(): match.group("value").strip()
        for match in _STYLE_DECL.finditer(style)
    }
    foreground = _expand_hex(declarations.get("color", ""))
    background = _expand_hex(declarations.get("background-color", "") or declarations.get("background", ""))
    if foreground and background:
        return foreground, background
    return None


def _is_low_contrast(element: Dict[str, str]) -> bool:
    for pair in (_class_pair(element["class"]), _style_pair(element["style"])):
        if pair is not None and contrast_ratio(*pair) < MIN_CONTRAST_RATIO:
            return True
    return False


# Checks


def _plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def check_missing_alt(scan: MarkupScan) -> Optional[str]:
    count = scan.images_missing_alt
    if not count:
        return None
    noun = _plural(count, "image is", "images are")
    return f"{count} {noun} missing alternative text (alt attribute)."


def check_unlabeled_controls(scan: MarkupScan) -> Optional[str]:
    count = scan.unlabeled_controls
    if not count:
        return None
    noun = _plural(count, "form control has", "form controls have")
    return f"{count} {noun} no associated label."


def check_unnamed_interactive(scan: MarkupScan) -> Optional[str]:
    count = scan.unnamed_interactive
    if not count:
        return None
    noun = _plural(count, "button or link has", "buttons or links have")
    return f"{count} {noun} no text or accessible name."


def check_low_contrast(scan: MarkupScan) -> Optional[str]:
    count = sum(1 for element in scan.styled_elements if _is_low_contrast(element))
    if not count:
        return None
    noun = _plural(count, "element uses", "elements use")
    return f"{count} {noun} a low-contrast text/background color pair (below WCAG AA 4.5:1)."


def check_html_lang(scan: MarkupScan) -> Optional[str]:
    if not scan.html_missing_lang:
        return None
    return "The <html> element is missing a lang attribute."


MARKUP_CHECKS: Sequence[Callable[[MarkupScan], Optional[str]]] = (
    check_missing_alt,
    check_unlabeled_controls,
    check_unnamed_interactive,
    check_low_contrast,
    check_html_lang,
)

WORD_LIMITS: Dict[ContentKind, int] = {
    ContentKind.HEADLINE: 15,
    ContentKind.TAGLINE: 10,
}


def check_word_limit(kind: ContentKind, text: str) -> Optional[str]:
    limit = WORD_LIMITS.get(kind)
    if limit is None:
        return None
    words = len(text.split())
    if words <= limit:
        return None
    return f"The {kind.value} has {words} words; keep it to {limit} or fewer."


def analyze(kind: ContentKind, text: str) -> List[str]:
    hints: List[str] = []
    if kind.is_markup:
        try:
            scan = scan_markup(text)
        except Exception:
            logger.exception("postprocess.scan_failed kind=%s", kind.value)
            return hints
        for check in MARKUP_CHECKS:
            try:
                hint = check(scan)
            except Exception:
                logger.exception("postprocess.check_failed check=%s", check.__name__)
                continue
            if hint:
                hints.append(hint)
        return hints
    try:
        hint = check_word_limit(kind, text)
    except Exception:
        logger.exception("postprocess.check_failed check=check_word_limit")
        hint = None
    if hint:
        hints.append(hint)
    return hints
