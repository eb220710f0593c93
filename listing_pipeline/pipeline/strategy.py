"""
Strategy Builder

Pure, deterministic mapping from a listing's photo analyses to per-photo
tool lists, the hero photo, the twilight candidate, the locked presets and
a confidence score. No I/O; identical inputs always produce identical
strategies regardless of the order the analyses arrive in.
"""

import math
from typing import Dict, List, Optional, Sequence

from listing_pipeline.pipeline.schemas import TOOL_ORDER, PhotoAnalysis, Strategy, ToolId

POOR_LIGHTING = ("dark", "overexposed")

DRAMATIC_SKY_HERO_SCORE = 0.85
LUXURY_INTERIOR_SCORE = 0.7
LUXURY_INTERIOR_SHARE = 0.7


def _ordered(tools: List[str]) -> List[str]:
    """Deduplicate and sort tools into execution order."""
    unique = set(tools)
    return [tool for tool in TOOL_ORDER if tool in unique]


def assign_tools(analysis: PhotoAnalysis, is_twilight_candidate: bool = False) -> List[str]:
    """Rule table for one photo."""
    tools: List[str] = []

    if analysis.sky_needs_replacement and not is_twilight_candidate:
        tools.append(ToolId.SKY_REPLACEMENT.value)
    if analysis.lawn_needs_repair:
        tools.append(ToolId.LAWN_REPAIR.value)
    if analysis.clutter_level == "high":
        tools.append(ToolId.DECLUTTER.value)
    if analysis.window_exposure_issue:
        tools.append(ToolId.WINDOW_MASKING.value)
    if analysis.needs_hdr:
        tools.append(ToolId.HDR_MERGING.value)
    if analysis.room_empty and not analysis.is_exterior:
        tools.append(ToolId.VIRTUAL_STAGING.value)
    if analysis.lighting_quality in POOR_LIGHTING and not analysis.needs_hdr:
        tools.append(ToolId.AUTO_ENHANCE.value)
    if is_twilight_candidate:
        # Twilight conversion repaints the sky itself
        tools.append(ToolId.TWILIGHT_CONVERSION.value)

    return _ordered(tools)


def select_hero(
    analyses: Sequence[PhotoAnalysis],
    hero_threshold: float
) -> Optional[str]:
    """
    Pick the cover photo.

    An exterior above the threshold replaces the current hero only with a
    strictly higher score, so ties keep the earliest upload. Without any
    qualifying exterior the best-scoring photo overall wins.
    """
    hero: Optional[PhotoAnalysis] = None
    for analysis in analyses:
        if not analysis.is_exterior or analysis.hero_score <= hero_threshold:
            continue
        if hero is None or analysis.hero_score > hero.hero_score:
            hero = analysis

    if hero is None:
        for analysis in analyses:
            if hero is None or analysis.hero_score > hero.hero_score:
                hero = analysis

    return hero.photo_id if hero else None


def select_twilight_candidate(
    analyses: Sequence[PhotoAnalysis],
    twilight_threshold: float
) -> Optional[str]:
    """The exterior best suited to a dusk conversion, if any is good enough."""
    candidate: Optional[PhotoAnalysis] = None
    for analysis in analyses:
        if not analysis.is_exterior or analysis.twilight_score < twilight_threshold:
            continue
        if candidate is None or analysis.twilight_score > candidate.twilight_score:
            candidate = analysis
    return candidate.photo_id if candidate else None


def listing_caps(analyses: Sequence[PhotoAnalysis]) -> Dict[str, int]:
    """
    Per-listing limits for the tools that repaint content.

    Sky and lawn scale with listing size; staging and twilight are fixed.
    Tools missing from the mapping are uncapped.
    """
    total = len(analyses)
    return {
        ToolId.SKY_REPLACEMENT.value: min(3, math.ceil(total * 0.15)),
        ToolId.LAWN_REPAIR.value: min(4, math.ceil(total * 0.20)),
        ToolId.VIRTUAL_STAGING.value: 2,
        ToolId.TWILIGHT_CONVERSION.value: 1,
    }


def apply_caps(
    assignments: Dict[str, List[str]],
    priority: Sequence[str],
    caps: Dict[str, int]
) -> Dict[str, List[str]]:
    """
    Drop capped tools once the listing has used its allowance.

    Photos earlier in ``priority`` claim capped tools first; the returned
    mapping keeps the key order of ``assignments``.
    """
    used = {tool: 0 for tool in caps}
    capped: Dict[str, List[str]] = {}
    for photo_id in priority:
        kept = []
        for tool in assignments[photo_id]:
            if tool in caps:
                if used[tool] >= caps[tool]:
                    continue
                used[tool] += 1
            kept.append(tool)
        capped[photo_id] = kept
    return {photo_id: capped[photo_id] for photo_id in assignments}


def lock_presets(
    analyses: Sequence[PhotoAnalysis],
    twilight_photo_id: Optional[str]
) -> Dict[str, str]:
    """One sky, twilight and staging look for the whole listing."""
    exteriors = [a for a in analyses if a.is_exterior]
    interiors = [a for a in analyses if not a.is_exterior]

    sky_style = "soft-blue"
    if any(a.hero_score > DRAMATIC_SKY_HERO_SCORE for a in exteriors):
        sky_style = "dramatic-clouds"

    twilight_tone = "golden-hour" if twilight_photo_id else "dusk"

    staging_style = "modern"
    if interiors:
        strong = sum(1 for a in interiors if a.hero_score >= LUXURY_INTERIOR_SCORE)
        if strong / len(interiors) > LUXURY_INTERIOR_SHARE:
            staging_style = "luxury"

    return {
        "sky_style": sky_style,
        "twilight_tone": twilight_tone,
        "staging_style": staging_style,
    }


def build_strategy(
    listing_id: str,
    analyses: Sequence[PhotoAnalysis],
    upload_order: Optional[Dict[str, int]] = None,
    hero_threshold: float = 0.7,
    twilight_threshold: float = 0.75,
    caps: Optional[Dict[str, int]] = None
) -> Strategy:
    """
    Build the enhancement strategy for a listing.

    Args:
        listing_id: Listing being prepared
        analyses: Successful analyses only
        upload_order: photo id -> upload position, used for tie-breaks
        hero_threshold: Minimum exterior hero score for hero candidacy
        twilight_threshold: Minimum twilight score for the twilight candidate
        caps: tool id -> listing limit; defaults to listing_caps()
    """
    upload_order = upload_order or {}
    ordered = sorted(
        analyses,
        key=lambda a: (upload_order.get(a.photo_id, len(upload_order)), a.photo_id)
    )

    hero_photo_id = select_hero(ordered, hero_threshold)
    twilight_photo_id = select_twilight_candidate(ordered, twilight_threshold)
    assignments = {
        analysis.photo_id: assign_tools(analysis, analysis.photo_id == twilight_photo_id)
        for analysis in ordered
    }

    # Hero first, then the strongest photos; sorted() is stable so ties keep upload order
    priority = [
        a.photo_id for a in sorted(
            ordered,
            key=lambda a: (a.photo_id != hero_photo_id, -a.hero_score)
        )
    ]
    assignments = apply_caps(assignments, priority, listing_caps(ordered) if caps is None else caps)

    confidence = 0.0
    if ordered:
        confidence = sum(a.completeness for a in ordered) / len(ordered)

    return Strategy(
        listing_id=listing_id,
        assignments=assignments,
        hero_photo_id=hero_photo_id,
        twilight_photo_id=twilight_photo_id,
        confidence=round(confidence, 6),
        presets=lock_presets(ordered, twilight_photo_id)
    )
