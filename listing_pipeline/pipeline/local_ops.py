"""
Local Enhancement Operations

Free-tier tools executed in-process with Pillow. Undecodable input is not
an error: the operation degrades to returning the source bytes unchanged
so the photo still gets an output.
"""

import io
from typing import Any, Dict, Tuple

from PIL import Image, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError

from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.schemas import ToolId

logger = get_logger(__name__)


def _to_jpeg(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=92)
    return buffer.getvalue()


def auto_enhance(image: Image.Image) -> Image.Image:
    """Stretch contrast, lift saturation slightly and sharpen."""
    image = ImageOps.autocontrast(image.convert("RGB"), cutoff=1)
    image = ImageEnhance.Color(image).enhance(1.1)
    return ImageEnhance.Sharpness(image).enhance(1.2)


def hdr_merge(image: Image.Image) -> Image.Image:
    """
    Single-exposure HDR approximation.

    Equalizes a copy of the image and blends it back in to open up
    shadows and tame highlights, then restores local contrast.
    """
    base = image.convert("RGB")
    equalized = ImageOps.equalize(base)
    blended = Image.blend(base, equalized, alpha=0.35)
    blended = blended.filter(ImageFilter.UnsharpMask(radius=2, percent=60, threshold=3))
    return ImageEnhance.Contrast(blended).enhance(1.05)


LOCAL_OPERATIONS = {
    ToolId.AUTO_ENHANCE.value: auto_enhance,
    ToolId.HDR_MERGING.value: hdr_merge,
}


def run_local(tool_id: str, image_bytes: bytes) -> Tuple[bytes, Dict[str, Any]]:
    """
    Apply a local tool to raw image bytes.

    Returns:
        Tuple of (output_bytes, metadata)
    """
    operation = LOCAL_OPERATIONS[tool_id]

    try:
        input_image = Image.open(io.BytesIO(image_bytes))
        input_image.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(
            "local_tool_degraded",
            tool_id=tool_id,
            input_size=len(image_bytes),
            error=str(e)
        )
        return image_bytes, {"degraded": True, "input_size": len(image_bytes)}

    output_bytes = _to_jpeg(operation(input_image))
    return output_bytes, {
        "degraded": False,
        "input_size": len(image_bytes),
        "output_size": len(output_bytes),
        "dimensions": input_image.size,
    }
