from collections.abc import Callable
from enum import Enum


class VideoStyle(str, Enum):
    PRODUCT_SHOWCASE = "PRODUCT_SHOWCASE"
    TALKING_HEAD = "TALKING_HEAD"
    LIFESTYLE = "LIFESTYLE"


_REFERENCE_NOTICE = (
    "IMPORTANT: The attached image is a PRODUCT REFERENCE showing what the product looks like - "
    "DO NOT display this image as the first frames. Start the video IMMEDIATELY with {opening}."
)
_MATCH_REFERENCE = (
    "The product shown must match the reference image exactly (colors, shape, materials, details)."
)


def _product_showcase(script: str) -> str:
    return (
        f"{_REFERENCE_NOTICE.format(opening='dynamic content')}\n\n"
        f"Create a sleek product showcase video with the following script. {_MATCH_REFERENCE} "
        "Use clean product shots, smooth zoom transitions, animated text overlays for key features, "
        "professional lighting, and a minimal background. Start with a dynamic hook shot, "
        f"not a static product image. Script: {script}"
    )


def _talking_head(script: str) -> str:
    return (
        f"{_REFERENCE_NOTICE.format(opening='the creator speaking')}\n\n"
        f"Create a UGC-style video with a friendly presenter speaking directly to camera. {_MATCH_REFERENCE} "
        "Use natural, conversational delivery, show the product while speaking about benefits. "
        f"Begin with the creator already talking, not a static product shot. Script: {script}"
    )


def _lifestyle(script: str) -> str:
    return (
        f"{_REFERENCE_NOTICE.format(opening='lifestyle action')}\n\n"
        "Create a lifestyle montage video showing the product being used in real-life scenarios. "
        f"{_MATCH_REFERENCE} Use multiple quick cuts between scenes, ambient and aspirational aesthetics. "
        f"Open with an engaging lifestyle moment, not a static product image. Script: {script}"
    )


STYLE_PROMPTS: dict[VideoStyle, Callable[[str], str]] = {
    VideoStyle.PRODUCT_SHOWCASE: _product_showcase,
    VideoStyle.TALKING_HEAD: _talking_head,
    VideoStyle.LIFESTYLE: _lifestyle,
}


def compose_prompt(style: VideoStyle | str, script: str, visual_summary: str | None = None) -> str:
    try:
        style = VideoStyle(style)
    except ValueError as exc:
        raise ValueError(f"Unsupported video style: {style}") from exc
    script = (script or "").strip()
    if not script:
        raise ValueError("script must not be empty")

    prompt = STYLE_PROMPTS[style](script)
    summary = (visual_summary or "").strip()
    if not summary:
        return prompt
    return (
        f"{prompt}\n\n"
        "PRODUCT VISUAL REFERENCE (use to match product appearance, NOT as opening frames):\n"
        f"{summary}\n\n"
        "REMINDER: Start video with dynamic content immediately. The attached image is only a reference "
        "for what the product should look like in the video - do not show it as a static frame."
    )
