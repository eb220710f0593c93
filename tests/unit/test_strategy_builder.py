"""
Unit tests for the Strategy Builder.

Pure functions: no I/O, no mocks.
"""

import random

import pytest

from listing_pipeline.pipeline.schemas import ToolId
from listing_pipeline.pipeline.strategy import (
    apply_caps,
    assign_tools,
    build_strategy,
    listing_caps,
    lock_presets,
    select_hero,
    select_twilight_candidate,
)
from tests.fakes import analysis


def three_photo_listing():
    return [
        analysis(
            "p1",
            room_type="exterior_front",
            is_exterior=True,
            sky_condition="overcast",
            sky_needs_replacement=True,
            hero_score=0.9,
            twilight_score=0.3,
            completeness=1.0,
        ),
        analysis("p2", room_type="kitchen", clutter_level="high", hero_score=0.4, completeness=0.8),
        analysis("p3", room_type="bedroom", clutter_level="high", hero_score=0.5, completeness=0.9),
    ]


class TestAssignTools:

    def test_healthy_photo_gets_no_tools(self):
        assert assign_tools(analysis("p1")) == []

    def test_flags_map_to_tools_in_execution_order(self):
        # Arrange
        photo = analysis(
            "p1",
            is_exterior=True,
            sky_needs_replacement=True,
            lawn_needs_repair=True,
            window_exposure_issue=True,
            needs_hdr=True,
        )

        # Act
        tools = assign_tools(photo)

        # Assert
        assert tools == [
            ToolId.SKY_REPLACEMENT.value,
            ToolId.LAWN_REPAIR.value,
            ToolId.WINDOW_MASKING.value,
            ToolId.HDR_MERGING.value,
        ]

    def test_high_clutter_only_triggers_declutter(self):
        assert assign_tools(analysis("p1", clutter_level="moderate")) == []
        assert assign_tools(analysis("p1", clutter_level="high")) == [ToolId.DECLUTTER.value]

    def test_poor_lighting_gets_auto_enhance_unless_hdr(self):
        assert assign_tools(analysis("p1", lighting_quality="dark")) == [ToolId.AUTO_ENHANCE.value]
        assert assign_tools(analysis("p1", lighting_quality="overexposed", needs_hdr=True)) == [
            ToolId.HDR_MERGING.value
        ]

    def test_empty_interior_gets_virtual_staging(self):
        assert assign_tools(analysis("p1", room_empty=True)) == [ToolId.VIRTUAL_STAGING.value]
        assert assign_tools(analysis("p1", room_empty=True, is_exterior=True)) == []

    def test_vertical_alignment_has_no_tool(self):
        assert assign_tools(analysis("p1", vertical_alignment_issue=True)) == []

    def test_twilight_candidate_replaces_sky_replacement(self):
        # Arrange
        photo = analysis("p1", is_exterior=True, sky_needs_replacement=True, lawn_needs_repair=True)

        # Act
        tools = assign_tools(photo, is_twilight_candidate=True)

        # Assert
        assert ToolId.SKY_REPLACEMENT.value not in tools
        assert tools == [ToolId.TWILIGHT_CONVERSION.value, ToolId.LAWN_REPAIR.value]


class TestHeroSelection:

    def test_exterior_above_threshold_wins(self):
        analyses = [
            analysis("interior", hero_score=0.95),
            analysis("exterior", is_exterior=True, hero_score=0.8),
        ]
        assert select_hero(analyses, 0.7) == "exterior"

    def test_tie_keeps_earliest_upload(self):
        analyses = [
            analysis("first", is_exterior=True, hero_score=0.85),
            analysis("second", is_exterior=True, hero_score=0.85),
        ]
        assert select_hero(analyses, 0.7) == "first"

    def test_falls_back_to_best_score_overall(self):
        analyses = [
            analysis("ext", is_exterior=True, hero_score=0.6),
            analysis("living", hero_score=0.65),
        ]
        assert select_hero(analyses, 0.7) == "living"

    def test_threshold_is_exclusive(self):
        analyses = [
            analysis("ext", is_exterior=True, hero_score=0.7),
            analysis("living", hero_score=0.9),
        ]
        assert select_hero(analyses, 0.7) == "living"

    def test_empty_input(self):
        assert select_hero([], 0.7) is None


class TestTwilightCandidate:

    def test_highest_exterior_score_at_or_above_threshold(self):
        analyses = [
            analysis("a", is_exterior=True, twilight_score=0.75),
            analysis("b", is_exterior=True, twilight_score=0.9),
            analysis("c", twilight_score=1.0),
        ]
        assert select_twilight_candidate(analyses, 0.75) == "b"

    def test_none_when_no_exterior_qualifies(self):
        analyses = [analysis("a", is_exterior=True, twilight_score=0.74)]
        assert select_twilight_candidate(analyses, 0.75) is None


class TestBuildStrategy:

    def test_three_photo_listing(self):
        # Act
        strategy = build_strategy("listing-1", three_photo_listing())

        # Assert
        assert strategy.assignments == {
            "p1": [ToolId.SKY_REPLACEMENT.value],
            "p2": [ToolId.DECLUTTER.value],
            "p3": [ToolId.DECLUTTER.value],
        }
        assert strategy.hero_photo_id == "p1"
        assert strategy.twilight_photo_id is None
        assert strategy.confidence == pytest.approx((1.0 + 0.8 + 0.9) / 3)

    def test_every_analyzed_photo_has_an_assignment(self):
        strategy = build_strategy("listing-1", [analysis("clean"), analysis("dark", lighting_quality="dark")])

        assert strategy.assignments["clean"] == []
        assert strategy.tools_for("dark") == [ToolId.AUTO_ENHANCE.value]
        assert strategy.tools_for("missing") == []

    def test_deterministic_regardless_of_input_order(self):
        # Arrange
        analyses = three_photo_listing() + [
            analysis("p4", is_exterior=True, hero_score=0.9, twilight_score=0.8, sky_needs_replacement=True),
        ]
        order = {"p1": 0, "p2": 1, "p3": 2, "p4": 3}
        expected = build_strategy("listing-1", analyses, upload_order=order)

        # Act / Assert
        rng = random.Random(7)
        for _ in range(10):
            shuffled = list(analyses)
            rng.shuffle(shuffled)
            assert build_strategy("listing-1", shuffled, upload_order=order) == expected

        assert expected.hero_photo_id == "p1"
        assert expected.twilight_photo_id == "p4"
        assert expected.assignments["p4"] == [ToolId.TWILIGHT_CONVERSION.value]

    def test_upload_order_breaks_hero_ties(self):
        analyses = [
            analysis("b", is_exterior=True, hero_score=0.8),
            analysis("a", is_exterior=True, hero_score=0.8),
        ]

        strategy = build_strategy("listing-1", analyses, upload_order={"b": 0, "a": 1})

        assert strategy.hero_photo_id == "b"

    def test_confidence_is_mean_completeness(self):
        analyses = [analysis("a", completeness=0.5), analysis("b", completeness=1.0)]

        assert build_strategy("listing-1", analyses).confidence == pytest.approx(0.75)

    def test_empty_analyses(self):
        strategy = build_strategy("listing-1", [])

        assert strategy.assignments == {}
        assert strategy.hero_photo_id is None
        assert strategy.confidence == 0.0


class TestListingCaps:

    def test_caps_scale_with_listing_size(self):
        caps = listing_caps([analysis(f"p{i}") for i in range(30)])

        assert caps[ToolId.SKY_REPLACEMENT.value] == 3
        assert caps[ToolId.LAWN_REPAIR.value] == 4
        assert caps[ToolId.VIRTUAL_STAGING.value] == 2
        assert caps[ToolId.TWILIGHT_CONVERSION.value] == 1
        assert ToolId.DECLUTTER.value not in caps

    def test_sky_replacement_goes_to_hero_and_strongest_photos(self):
        # Arrange
        scores = [0.5, 0.95, 0.8, 0.3, 0.3, 0.6, 0.2, 0.4, 0.6, 0.1]
        analyses = [
            analysis(f"e{i}", is_exterior=True, sky_needs_replacement=True, hero_score=score)
            for i, score in enumerate(scores)
        ]

        # Act
        strategy = build_strategy("listing-1", analyses, upload_order={f"e{i}": i for i in range(10)})

        # Assert
        sky = [photo_id for photo_id, tools in strategy.assignments.items() if tools]
        assert strategy.hero_photo_id == "e1"
        assert sky == ["e1", "e2"]
        assert list(strategy.assignments) == [f"e{i}" for i in range(10)]

    def test_staging_capped_with_upload_order_tie_break(self):
        analyses = [analysis(f"r{i}", room_empty=True, hero_score=0.5) for i in range(5)]

        strategy = build_strategy("listing-1", analyses, upload_order={f"r{i}": i for i in range(5)})

        staged = [photo_id for photo_id, tools in strategy.assignments.items() if tools]
        assert staged == ["r0", "r1"]

    def test_declutter_is_not_capped(self):
        analyses = [analysis(f"p{i}", clutter_level="high") for i in range(10)]

        strategy = build_strategy("listing-1", analyses)

        assert all(tools == [ToolId.DECLUTTER.value] for tools in strategy.assignments.values())

    def test_empty_caps_disable_limits(self):
        analyses = [analysis(f"e{i}", is_exterior=True, sky_needs_replacement=True) for i in range(10)]

        strategy = build_strategy("listing-1", analyses, caps={})

        assert all(tools == [ToolId.SKY_REPLACEMENT.value] for tools in strategy.assignments.values())

    def test_apply_caps_follows_priority_and_keeps_key_order(self):
        sky = ToolId.SKY_REPLACEMENT.value
        lawn = ToolId.LAWN_REPAIR.value
        assignments = {"a": [sky, lawn], "b": [sky], "c": [sky]}

        capped = apply_caps(assignments, ["c", "a", "b"], {sky: 1})

        assert capped == {"a": [lawn], "b": [], "c": [sky]}
        assert list(capped) == ["a", "b", "c"]


class TestLockPresets:

    def test_defaults(self):
        presets = lock_presets([analysis("p1", is_exterior=True, hero_score=0.8), analysis("p2")], None)

        assert presets == {"sky_style": "soft-blue", "twilight_tone": "dusk", "staging_style": "modern"}

    def test_strong_exterior_gets_dramatic_sky(self):
        presets = lock_presets([analysis("p1", is_exterior=True, hero_score=0.9)], None)

        assert presets["sky_style"] == "dramatic-clouds"

    def test_strong_interior_score_alone_keeps_soft_sky(self):
        presets = lock_presets([analysis("p1", hero_score=0.95)], None)

        assert presets["sky_style"] == "soft-blue"

    def test_twilight_candidate_gets_golden_hour(self):
        presets = lock_presets([analysis("p1", is_exterior=True)], "p1")

        assert presets["twilight_tone"] == "golden-hour"

    def test_luxury_staging_needs_most_interiors_strong(self):
        strong = [analysis(f"i{i}", hero_score=0.75) for i in range(4)]

        assert lock_presets(strong, None)["staging_style"] == "luxury"
        weak = [analysis("w1", hero_score=0.2), analysis("w2", hero_score=0.2)]
        assert lock_presets(strong + weak, None)["staging_style"] == "modern"

    def test_presets_are_part_of_the_strategy(self):
        strategy = build_strategy("listing-1", three_photo_listing())

        assert strategy.presets["sky_style"] == "dramatic-clouds"
        assert strategy.presets["staging_style"] == "modern"
