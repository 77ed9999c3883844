from __future__ import annotations

import html
from dataclasses import dataclass

FONTS: dict[str, str] = {
    "Serif": "'Lora', Georgia, serif",
    "Sans": "'Inter', system-ui, sans-serif",
    "System": "system-ui, sans-serif",
}
DEFAULT_FONT = "Serif"
FONT_SIZE_RANGE = (12, 32)
LINE_HEIGHT_RANGE = (1.2, 2.4)
DEFAULT_FONT_SIZE = 18
DEFAULT_LINE_HEIGHT = 1.8

BACKGROUND = "#0a0a0c"
TEXT_COLOR = "#e4e4ec"
HEADING_COLOR = "#f4f4fa"
LINK_COLOR = "#8b5cf6"
LINK_HOVER_COLOR = "#a78bfa"
ACCENT_COLOR = "#7c3aed"
CODE_BACKGROUND = "#1a1a1f"
BORDER_COLOR = "#2a2a32"
SELECTION_COLOR = "rgba(124, 58, 237, 0.3)"


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return min(high, max(low, value))


@dataclass(frozen=True)
class ThemeSettings:
    font_size: int = DEFAULT_FONT_SIZE
    line_height: float = DEFAULT_LINE_HEIGHT
    font_family: str = DEFAULT_FONT

    def __post_init__(self) -> None:
        object.__setattr__(self, "font_size", int(round(_clamp(self.font_size, FONT_SIZE_RANGE))))
        object.__setattr__(
            self, "line_height", round(_clamp(float(self.line_height), LINE_HEIGHT_RANGE), 2)
        )
        if self.font_family not in FONTS:
            object.__setattr__(self, "font_family", DEFAULT_FONT)

    @property
    def font_stack(self) -> str:
        return FONTS[self.font_family]

    @classmethod
    def from_payload(cls, payload: object) -> "ThemeSettings":
        """Build settings from loosely typed JSON, ignoring unusable fields."""
        if not isinstance(payload, dict):
            return cls()
        kwargs: dict[str, object] = {}
        font_size = payload.get("font_size")
        if isinstance(font_size, (int, float)) and not isinstance(font_size, bool):
            kwargs["font_size"] = font_size
        line_height = payload.get("line_height")
        if isinstance(line_height, (int, float)) and not isinstance(line_height, bool):
            kwargs["line_height"] = line_height
        font_family = payload.get("font_family")
        if isinstance(font_family, str):
            kwargs["font_family"] = font_family
        return cls(**kwargs)  # type: ignore[arg-type]

    def merged(self, payload: object) -> "ThemeSettings":
        if not isinstance(payload, dict):
            return self
        return ThemeSettings.from_payload({**self.as_payload(), **payload})

    def as_payload(self) -> dict[str, object]:
        return {
            "font_size": self.font_size,
            "line_height": self.line_height,
            "font_family": self.font_family,
        }


def build_theme_css(settings: ThemeSettings | None = None) -> str:
    """Curated reset plus the dark reading theme.

    Normalized fragments carry no styling of their own; this sheet is the
    only one a themed document gets.
    """
    settings = settings or ThemeSettings()
    return f"""*, *::before, *::after {{ box-sizing: border-box; }}
html, body {{
  margin: 0;
  padding: 0;
  background: {BACKGROUND};
  color: {TEXT_COLOR};
}}
body {{
  font-family: {settings.font_stack};
  font-size: {settings.font_size}px;
  line-height: {settings.line_height};
  padding: 2rem 1.5rem;
  max-width: 42rem;
  margin: 0 auto;
  -webkit-font-smoothing: antialiased;
}}
h1, h2, h3, h4, h5, h6 {{
  color: {HEADING_COLOR};
  line-height: 1.3;
  margin: 1.6em 0 0.6em;
}}
p {{ margin: 0 0 1em; }}
a {{ color: {LINK_COLOR}; text-decoration: none; }}
a:hover {{ color: {LINK_HOVER_COLOR}; text-decoration: underline; }}
img, svg, video {{ max-width: 100%; height: auto; }}
blockquote {{
  margin: 1em 0;
  padding: 0.25em 1em;
  border-left: 3px solid {ACCENT_COLOR};
  opacity: 0.9;
}}
pre, code {{
  background: {CODE_BACKGROUND};
  border-radius: 4px;
  font-family: ui-monospace, SFMono-Regular, Menlo, monospace;
  font-size: 0.9em;
}}
code {{ padding: 0.1em 0.3em; }}
pre {{ padding: 1em; overflow-x: auto; }}
pre code {{ padding: 0; background: none; }}
table {{ border-collapse: collapse; width: 100%; margin: 1em 0; }}
th, td {{ border: 1px solid {BORDER_COLOR}; padding: 0.4em 0.6em; }}
hr {{ border: none; border-top: 1px solid {BORDER_COLOR}; margin: 2em 0; }}
::selection {{ background: {SELECTION_COLOR}; }}
.shpeegle-placeholder {{ opacity: 0.6; font-style: italic; }}
"""


def render_document(markup: str, settings: ThemeSettings | None = None, title: str = "") -> str:
    """Wrap normalized markup in a standalone themed HTML document."""
    safe_title = html.escape(title or "Untitled")
    return (
        "<!DOCTYPE html>\n"
        '<html>\n<head>\n<meta charset="utf-8">\n'
        '<meta name="viewport" content="width=device-width, initial-scale=1">\n'
        f"<title>{safe_title}</title>\n"
        f"<style>\n{build_theme_css(settings)}</style>\n"
        "</head>\n<body>\n"
        f"{markup}\n"
        "</body>\n</html>\n"
    )
