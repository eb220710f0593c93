"""
Model Router

Pure mapping from (tool id, photo context) to an invocation descriptor:
which model to call, with what input, at what cost tier and with what
expected latency. Total over the closed tool set; performs no I/O.
"""

from typing import Any, Dict

from listing_pipeline.core.exceptions import UnknownTool
from listing_pipeline.pipeline.schemas import (
    CostTier,
    InvocationDescriptor,
    PhotoContext,
    ToolId,
)

LOCAL_MODEL = "pillow-local"
FLUX_KONTEXT = "black-forest-labs/flux-kontext-dev"
SKY_REPLACER = "cjwbw/sky-replacer"
LAMA = "lucataco/lama"
REAL_ESRGAN = "nightmareai/real-esrgan"
CONTROLNET_CANNY = "jagilley/controlnet-canny"

PRESERVE = (
    "Keep the house, roof, trees, lawn, driveway and all other elements exactly the same."
)

SKY_PROMPT = (
    "Replace the sky with a beautiful clear blue sky with a few soft white clouds. "
    "The sky should be bright and inviting. Do not change the lighting on the building. "
    f"{PRESERVE} Only replace the sky area."
)

DRAMATIC_SKY_PROMPT = (
    "Replace the sky with a deep blue sky with a few large, well defined white clouds. "
    "Do not change the lighting on the building. "
    f"{PRESERVE} Only replace the sky area."
)

TWILIGHT_PROMPT = (
    "Transform this daytime exterior photo into a beautiful twilight scene. Replace the sky "
    "with a gradient from deep blue at top to warm orange-pink at the horizon. Add warm "
    "yellow-orange light glowing from inside all windows. Keep the house structure, "
    "landscaping and all other elements exactly the same. Professional real estate twilight photography."
)

GOLDEN_HOUR_PROMPT = (
    "Transform this daytime exterior photo into golden hour. The sky shows warm orange and pink "
    "sunset colors with no clouds. Keep the house bright and clearly visible and add a warm "
    "yellow glow to every window. Keep the house structure, landscaping and all other "
    "elements exactly the same. Professional real estate twilight photography."
)

# Listing-wide presets (see strategy.lock_presets) -> prompt
SKY_PROMPTS = {
    "soft-blue": SKY_PROMPT,
    "dramatic-clouds": DRAMATIC_SKY_PROMPT,
}
TWILIGHT_PROMPTS = {
    "dusk": TWILIGHT_PROMPT,
    "golden-hour": GOLDEN_HOUR_PROMPT,
}
STAGING_STYLES = {
    "modern": "modern furniture with clean lines and neutral gray and white tones",
    "luxury": "luxury high-end furniture with velvet textures, marble surfaces and gold accents",
}

WINDOW_PROMPT = (
    "Balance the window exposure so the view outside is clearly visible instead of blown out "
    "white, while the interior brightness stays the same. Do not change furniture, walls or layout."
)

# Sky conditions a simple sky segmenter handles well
SIMPLE_SKY_CONDITIONS = ("clear",)


def _flux_input(image_url: str, prompt: str, guidance: float = 3.0, steps: int = 28) -> Dict[str, Any]:
    return {
        "input_image": image_url,
        "prompt": prompt,
        "guidance": guidance,
        "num_inference_steps": steps,
        "aspect_ratio": "match_input_image",
        "output_format": "jpg",
        "output_quality": 95,
    }


def _preset_prompt(prompts: Dict[str, str], context: PhotoContext, option: str) -> str:
    """Prompt for the listing's locked preset; the first entry is the default."""
    default = next(iter(prompts.values()))
    return prompts.get(context.options.get(option), default)


def _staging_prompt(context: PhotoContext) -> str:
    room = context.analysis.room_type if context.analysis else "room"
    furniture = STAGING_STYLES.get(context.options.get("staging_style"), STAGING_STYLES["modern"])
    return (
        f"A beautifully staged {room.replace('_', ' ')} with {furniture}, "
        "professional real estate photography, natural light, same walls, windows and floor"
    )


def route(tool_id: str, context: PhotoContext) -> InvocationDescriptor:
    """
    Resolve a tool into a concrete model invocation.

    Raises:
        UnknownTool: tool_id is outside the closed tool set
    """
    try:
        tool = ToolId(tool_id)
    except ValueError:
        raise UnknownTool(tool_id)

    url = context.image_url

    if tool in (ToolId.AUTO_ENHANCE, ToolId.HDR_MERGING):
        return InvocationDescriptor(
            tool_id=tool.value,
            model=LOCAL_MODEL,
            input={"operation": tool.value},
            estimated_ms=500 if tool == ToolId.AUTO_ENHANCE else 800,
            cost_tier=CostTier.FREE,
            is_local=True
        )

    if tool == ToolId.SKY_REPLACEMENT:
        sky = context.analysis.sky_condition if context.analysis else "none"
        if sky in SIMPLE_SKY_CONDITIONS:
            return InvocationDescriptor(
                tool_id=tool.value,
                model=SKY_REPLACER,
                input={"image": url},
                estimated_ms=15000,
                cost_tier=CostTier.LOW
            )
        return InvocationDescriptor(
            tool_id=tool.value,
            model=FLUX_KONTEXT,
            input=_flux_input(
                url, _preset_prompt(SKY_PROMPTS, context, "sky_style"), guidance=2.5, steps=25
            ),
            estimated_ms=20000,
            cost_tier=CostTier.HIGH
        )

    if tool in (ToolId.LAWN_REPAIR, ToolId.OBJECT_REMOVAL, ToolId.DECLUTTER):
        return InvocationDescriptor(
            tool_id=tool.value,
            model=LAMA,
            input={"image": url},
            estimated_ms=20000,
            cost_tier=CostTier.LOW
        )

    if tool == ToolId.WINDOW_MASKING:
        return InvocationDescriptor(
            tool_id=tool.value,
            model=FLUX_KONTEXT,
            input=_flux_input(url, WINDOW_PROMPT, guidance=2.5, steps=25),
            estimated_ms=20000,
            cost_tier=CostTier.LOW
        )

    if tool == ToolId.UPSCALING:
        return InvocationDescriptor(
            tool_id=tool.value,
            model=REAL_ESRGAN,
            input={"image": url, "scale": 2, "face_enhance": False},
            estimated_ms=15000,
            cost_tier=CostTier.LOW
        )

    if tool == ToolId.VIRTUAL_STAGING:
        return InvocationDescriptor(
            tool_id=tool.value,
            model=CONTROLNET_CANNY,
            input={
                "image": url,
                "prompt": _staging_prompt(context),
                "num_samples": "1",
                "image_resolution": "768",
            },
            estimated_ms=40000,
            cost_tier=CostTier.HIGH
        )

    # ToolId.TWILIGHT_CONVERSION
    return InvocationDescriptor(
        tool_id=tool.value,
        model=FLUX_KONTEXT,
        input=_flux_input(
            url, _preset_prompt(TWILIGHT_PROMPTS, context, "twilight_tone"), guidance=3.5, steps=30
        ),
        estimated_ms=45000,
        cost_tier=CostTier.HIGH
    )


def timeout_for(descriptor: InvocationDescriptor, factor: float = 3.0, margin_seconds: float = 30.0) -> float:
    """Per-call timeout in seconds: estimated latency times factor plus a margin."""
    return descriptor.estimated_ms / 1000.0 * factor + margin_seconds
