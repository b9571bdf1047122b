import pytest

from ugc_pipeline.prompts import STYLE_PROMPTS, VideoStyle, compose_prompt


def test_every_style_has_a_template():
    assert set(STYLE_PROMPTS) == set(VideoStyle)


@pytest.mark.parametrize(
    ("style", "marker"),
    [
        ("PRODUCT_SHOWCASE", "sleek product showcase"),
        ("TALKING_HEAD", "friendly presenter"),
        ("LIFESTYLE", "lifestyle montage"),
    ],
)
def test_template_embeds_script_and_reference_rules(style, marker):
    prompt = compose_prompt(style, "  Try the new blender.  ")

    assert marker in prompt
    assert prompt.endswith("Script: Try the new blender.")
    assert prompt.startswith("IMPORTANT: The attached image is a PRODUCT REFERENCE")
    assert "must match the reference image exactly" in prompt
    assert "PRODUCT VISUAL REFERENCE" not in prompt


def test_visual_summary_is_appended_after_template():
    prompt = compose_prompt(VideoStyle.TALKING_HEAD, "Hi there", visual_summary=" red ceramic mug ")

    base, addendum = prompt.split("\n\nPRODUCT VISUAL REFERENCE", 1)
    assert base == compose_prompt(VideoStyle.TALKING_HEAD, "Hi there")
    assert "(use to match product appearance, NOT as opening frames):\nred ceramic mug\n\n" in addendum
    assert "REMINDER: Start video with dynamic content immediately." in addendum


def test_blank_summary_is_ignored():
    assert compose_prompt("LIFESTYLE", "x", "   ") == compose_prompt("LIFESTYLE", "x")


def test_unknown_style_rejected():
    with pytest.raises(ValueError, match="Unsupported video style"):
        compose_prompt("UNBOXING", "script")


def test_blank_script_rejected():
    with pytest.raises(ValueError, match="script must not be empty"):
        compose_prompt("LIFESTYLE", "  \n ")
