"""Tests for the account deletion resource graph and planner."""

import pytest

from app.services.deletion_errors import DeletionPlanError
from app.services.deletion_graph import (
    ALL_RESOURCES,
    RESOURCE_GRAPH,
    CollectionScan,
    GraphPlanner,
    IdentityResource,
    Phase,
    SingleDocument,
    post_media_paths,
    story_media_paths,
)


class TestGraphPlanner:
    """Validation and ordering of the static graph."""

    def test_plan_covers_every_phase_in_order(self) -> None:
        phases = GraphPlanner().plan("alice")
        assert [p.phase for p in phases] == list(Phase)

    def test_plan_contains_every_resource_once(self) -> None:
        phases = GraphPlanner().plan("alice")
        planned = [step.resource_type for p in phases for step in p.steps]
        assert sorted(planned) == sorted(d.resource_type for d in RESOURCE_GRAPH)

    def test_identity_is_the_last_step(self) -> None:
        phases = GraphPlanner().plan("alice")
        last = phases[-1]
        assert last.phase is Phase.IDENTITY
        assert [s.resource_type for s in last.steps] == ["identity"]

    def test_dependencies_precede_dependents(self) -> None:
        planner = GraphPlanner()
        order = planner.resource_types
        position = {name: index for index, name in enumerate(order)}
        for descriptor in RESOURCE_GRAPH:
            for dep in descriptor.depends_on:
                if dep == ALL_RESOURCES:
                    continue
                assert position[dep] < position[descriptor.resource_type]

    def test_locators_are_resolved_for_owner(self) -> None:
        steps = {
            step.resource_type: step
            for phase in GraphPlanner().plan("alice")
            for step in phase.steps
        }
        assert steps["userProfile"].locator == "users/alice"
        assert steps["deletionLedger"].locator == "deletionLedger/alice"
        assert steps["ownerBlobPrefixes"].locator.startswith("profiles/alice/")
        assert steps["authoredComments"].locator == "**/comments[authorId==alice]"

    def test_declaration_order_is_stable_within_phase(self) -> None:
        descriptors = [
            CollectionScan(
                resource_type="b", phase=Phase.LEAF_COLLECTIONS, collection="b", field="uid"
            ),
            CollectionScan(
                resource_type="a", phase=Phase.LEAF_COLLECTIONS, collection="a", field="uid"
            ),
        ]
        assert GraphPlanner(descriptors).resource_types == ["b", "a"]

    def test_unknown_dependency_rejected(self) -> None:
        descriptors = [
            SingleDocument(
                resource_type="profile",
                phase=Phase.ACCOUNT_RECORDS,
                depends_on=("missing",),
                path="users/{owner_id}",
            )
        ]
        with pytest.raises(DeletionPlanError, match="unknown"):
            GraphPlanner(descriptors)

    def test_dependency_in_later_phase_rejected(self) -> None:
        descriptors = [
            SingleDocument(
                resource_type="early",
                phase=Phase.LEAF_COLLECTIONS,
                depends_on=("late",),
                path="a/{owner_id}",
            ),
            SingleDocument(
                resource_type="late", phase=Phase.ACCOUNT_RECORDS, path="b/{owner_id}"
            ),
        ]
        with pytest.raises(DeletionPlanError, match="later phase"):
            GraphPlanner(descriptors)

    def test_cycle_rejected(self) -> None:
        descriptors = [
            SingleDocument(
                resource_type="a",
                phase=Phase.ACCOUNT_RECORDS,
                depends_on=("b",),
                path="a/{owner_id}",
            ),
            SingleDocument(
                resource_type="b",
                phase=Phase.ACCOUNT_RECORDS,
                depends_on=("a",),
                path="b/{owner_id}",
            ),
        ]
        with pytest.raises(DeletionPlanError, match="cycle"):
            GraphPlanner(descriptors)

    def test_duplicate_resource_type_rejected(self) -> None:
        descriptors = [
            IdentityResource(resource_type="identity", phase=Phase.IDENTITY),
            IdentityResource(resource_type="identity", phase=Phase.IDENTITY),
        ]
        with pytest.raises(DeletionPlanError, match="Duplicate"):
            GraphPlanner(descriptors)


class TestBlobExtraction:
    def test_post_media_skips_youtube_and_urls(self) -> None:
        data = {
            "media": [
                {"path": "posts/alice/1.jpg"},
                {"path": "posts/alice/videos/youtube-xyz"},
                {"path": "posts/alice/embed", "url": "https://youtu.be/xyz"},
                {"path": "https://cdn.example.com/2.jpg"},
                {"path": ""},
                "not-a-dict",
            ]
        }
        assert post_media_paths(data) == ["posts/alice/1.jpg"]

    def test_post_without_media(self) -> None:
        assert post_media_paths({}) == []
        assert post_media_paths({"media": "nope"}) == []

    def test_story_media_and_thumbnail(self) -> None:
        data = {"mediaPath": "stories/alice/1.mp4", "thumbPath": None}
        assert story_media_paths(data) == ["stories/alice/1.mp4"]
