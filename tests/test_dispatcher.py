"""Tests for the TriggerDispatcher and MutationEvent lifecycle.

Covers:
- State histories for saves and deletes with and without triggers
- beforeSave mutations applied on allow
- Reject blocks the write and no afterSave ever runs
- After-triggers run detached, strictly after the commit
- afterDelete snapshots refuse save and refetch
- Nested saves from handler code fire their own triggers
- Illegal transitions
"""

from __future__ import annotations

import threading
import time

import pytest

from cloudcode.dispatcher import MutationEvent, MutationState
from cloudcode.exceptions import (
    HandlerTimeoutError,
    IllegalTransitionError,
    InternalError,
    InvalidPayloadError,
    ObjectNotFoundError,
    StaleObjectError,
    ValidationRejection,
)
from cloudcode.models.entity import Entity
from cloudcode.models.outcome import Allow, TriggerKind
from tests.conftest import review

S = MutationState


# ---------------------------------------------------------------------------
# MutationEvent
# ---------------------------------------------------------------------------


class TestMutationEvent:
    def test_starts_pending(self):
        event = MutationEvent("save", "Review", review())
        assert event.state is S.PENDING
        assert event.history == [S.PENDING]
        assert not event.finished

    def test_full_path(self):
        event = MutationEvent("save", "Review", review())
        for state in (S.BEFORE, S.DECIDED, S.COMMITTED, S.AFTER, S.DONE):
            event.advance(state)
        assert event.history == [S.PENDING, S.BEFORE, S.DECIDED, S.COMMITTED, S.AFTER, S.DONE]
        assert event.wait(0)

    @pytest.mark.parametrize(
        "path",
        [
            [S.DECIDED],
            [S.REJECTED],
            [S.AFTER],
            [S.BEFORE, S.COMMITTED],
            [S.BEFORE, S.DECIDED, S.REJECTED, S.COMMITTED],
            [S.COMMITTED, S.DONE, S.AFTER],
        ],
    )
    def test_illegal_transitions(self, path):
        event = MutationEvent("save", "Review", review())
        *legal, illegal = path
        for state in legal:
            event.advance(state)
        with pytest.raises(IllegalTransitionError):
            event.advance(illegal)

    def test_no_error_unless_rejected(self):
        event = MutationEvent("save", "Review", review())
        assert event.error is None
        event.raise_if_rejected()


# ---------------------------------------------------------------------------
# Saves
# ---------------------------------------------------------------------------


class TestSave:
    def test_save_without_triggers(self, cloud):
        event = cloud.dispatcher.save(review(stars=4))
        assert event.history == [S.PENDING, S.COMMITTED, S.DONE]
        assert event.verdict is None
        assert event.committed.object_id is not None
        assert cloud.get("Review", event.committed.object_id)["stars"] == 4

    def test_before_save_mutations_are_applied(self, cloud):
        @cloud.before_save("Review")
        def normalize(request, response):
            request.object.set("movie", request.object["movie"].upper())
            response.allow()

        event = cloud.dispatcher.save(review(movie="The Matrix"))
        assert event.history == [S.PENDING, S.BEFORE, S.DECIDED, S.COMMITTED, S.DONE]
        assert isinstance(event.verdict, Allow)
        assert cloud.get("Review", event.committed.object_id)["movie"] == "THE MATRIX"

    def test_caller_entity_is_not_mutated(self, cloud):
        cloud.before_save("Review", lambda req, res: (req.object.set("x", 1), res.allow()))
        entity = review()
        cloud.dispatcher.save(entity)
        assert "x" not in entity

    def test_allow_cannot_swap_in_another_stored_object(self, cloud):
        victim = cloud.store.save(review(who="victim"))

        @cloud.before_save("Review")
        def swap(request, response):
            response.allow(cloud.get("Review", victim.object_id))

        with pytest.raises(InvalidPayloadError):
            cloud.save(review(who="new"))

        assert cloud.get("Review", victim.object_id) == victim
        assert [r["who"] for r in cloud.query("Review").find()] == ["victim"]

    def test_reject_blocks_write_and_after_save(self, cloud):
        after_calls = []
        cloud.before_save("Review", lambda req, res: res.reject("stars must be <= 5"))
        cloud.after_save("Review", lambda req, res: after_calls.append(req.object))

        event = cloud.dispatcher.save(review(stars=6))

        assert event.state is S.REJECTED
        assert S.COMMITTED not in event.history
        assert event.committed is None
        assert event.after is None
        assert cloud.store.count("Review") == 0
        time.sleep(0.1)
        assert after_calls == []

        err = event.error
        assert isinstance(err, ValidationRejection)
        assert str(err) == "stars must be <= 5"
        with pytest.raises(ValidationRejection):
            event.raise_if_rejected()

    def test_reject_is_logged(self, cloud):
        cloud.before_save("Review", lambda req, res: res.reject("nope"))
        cloud.dispatcher.save(review())
        (record,) = cloud.log.records(outcome="rejected")
        assert record.kind is TriggerKind.BEFORE_SAVE
        assert record.error_detail == "nope"

    def test_before_save_timeout_rejects(self, cloud, release):
        cloud.before_save("Review", lambda req, res: release.wait(), timeout=0.1)
        event = cloud.dispatcher.save(review())
        assert event.rejected
        assert isinstance(event.error, HandlerTimeoutError)
        assert cloud.store.count("Review") == 0

    def test_before_save_fault_rejects(self, cloud):
        def broken(request, response):
            raise ValueError("bad handler")

        cloud.before_save("Review", broken)
        event = cloud.dispatcher.save(review())
        assert isinstance(event.error, InternalError)
        assert cloud.store.count("Review") == 0

    def test_original_is_passed_on_update(self, cloud):
        seen = []

        @cloud.before_save("Review")
        def check(request, response):
            seen.append(request.original["stars"] if request.original else None)
            response.allow()

        saved = cloud.save(review(stars=3))
        saved.set("stars", 4)
        cloud.save(saved)
        assert seen == [None, 3]

    def test_after_save_runs_after_commit(self, cloud):
        seen = []

        @cloud.after_save("Review")
        def after(request, response):
            stored = cloud.get("Review", request.object.object_id)
            seen.append((request.object.object_id, stored is not None))

        event = cloud.dispatcher.save(review())
        assert event.wait(5)
        assert event.history[-2:] == [S.AFTER, S.DONE]
        assert seen == [(event.committed.object_id, True)]

    def test_after_save_does_not_block_caller(self, cloud, release):
        cloud.after_save("Review", lambda req, res: release.wait())
        start = time.monotonic()
        event = cloud.dispatcher.save(review())
        assert time.monotonic() - start < 0.25
        assert event.state is S.AFTER
        assert cloud.store.count("Review") == 1
        release.set()
        assert event.wait(5)

    def test_after_save_failure_only_reaches_log(self, cloud):
        def broken(request, response):
            raise RuntimeError("push failed")

        cloud.after_save("Review", broken)
        event = cloud.dispatcher.save(review())
        assert event.error is None
        assert event.wait(5)
        (record,) = cloud.log.records(kind=TriggerKind.AFTER_SAVE)
        assert record.outcome == "failure"


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


class TestDelete:
    def test_delete_without_triggers(self, cloud):
        saved = cloud.save(review())
        event = cloud.dispatcher.delete(saved)
        assert event.history == [S.PENDING, S.COMMITTED, S.DONE]
        assert cloud.get("Review", saved.object_id) is None

    def test_delete_missing_object(self, cloud):
        with pytest.raises(ObjectNotFoundError):
            cloud.dispatcher.delete(Entity("Review", object_id="missing"))
        with pytest.raises(ObjectNotFoundError):
            cloud.dispatcher.delete(Entity("Review"))

    def test_before_delete_reject_keeps_object(self, cloud):
        cloud.before_delete("Review", lambda req, res: res.reject("reviews are permanent"))
        saved = cloud.save(review())
        event = cloud.dispatcher.delete(saved)
        assert event.rejected
        assert str(event.error) == "reviews are permanent"
        assert cloud.get("Review", saved.object_id) is not None

    def test_before_delete_allow_then_after_delete_sees_deleted_object(self, cloud):
        order = []

        @cloud.before_delete("Review")
        def before(request, response):
            order.append(("before", cloud.get("Review", request.object.object_id) is not None))
            response.allow()

        @cloud.after_delete("Review")
        def after(request, response):
            order.append(("after", cloud.get("Review", request.object.object_id) is not None))

        saved = cloud.save(review())
        event = cloud.dispatcher.delete(saved)
        assert event.wait(5)
        assert order == [("before", True), ("after", False)]
        assert event.history == [
            S.PENDING, S.BEFORE, S.DECIDED, S.COMMITTED, S.AFTER, S.DONE,
        ]

    def test_after_delete_object_is_stale(self, cloud):
        errors = []

        @cloud.after_delete("Review")
        def after(request, response):
            obj = request.object
            for attempt in (
                lambda: request.objects.save(obj),
                lambda: request.objects.fetch(obj),
                lambda: request.objects.delete(obj),
                lambda: obj.set("stars", 1),
                lambda: obj.fields.__setitem__("stars", 1),
            ):
                try:
                    attempt()
                except StaleObjectError as exc:
                    errors.append(exc)

        saved = cloud.save(review())
        event = cloud.dispatcher.delete(saved)
        assert event.wait(5)
        assert len(errors) == 5
        assert cloud.get("Review", saved.object_id) is None


# ---------------------------------------------------------------------------
# Collaborator hooks and nesting
# ---------------------------------------------------------------------------


class TestHooks:
    def test_before_without_handler_allows(self, cloud):
        entity = review()
        assert cloud.dispatcher.before("beforeSave", entity) == Allow(entity)

    def test_after_without_handler(self, cloud):
        assert cloud.dispatcher.after("afterSave", review()) is None

    def test_kind_checks(self, cloud):
        with pytest.raises(ValueError):
            cloud.dispatcher.before(TriggerKind.AFTER_SAVE, review())
        with pytest.raises(ValueError):
            cloud.dispatcher.after(TriggerKind.BEFORE_DELETE, review())

    def test_after_returns_future(self, cloud):
        cloud.after_save("Review", lambda req, res: None)
        future = cloud.dispatcher.after("afterSave", review())
        assert future is not None
        future.result(timeout=5)

    def test_nested_save_fires_its_own_triggers(self, cloud):
        stamped = threading.Event()

        @cloud.before_save("Movie")
        def stamp(request, response):
            request.object.set("touched", True)
            stamped.set()
            response.allow()

        @cloud.after_save("Review")
        def bump_movie(request, response):
            movie = request.objects.query("Movie").equal_to("title", request.object["movie"]).first()
            movie.set("reviews", movie.get("reviews", 0) + 1)
            request.objects.save(movie)

        cloud.store.save(Entity("Movie", {"title": "The Matrix"}))
        event = cloud.dispatcher.save(review(movie="The Matrix"))
        assert event.wait(5)
        assert stamped.is_set()
        movie = cloud.query("Movie").first()
        assert movie["reviews"] == 1
        assert movie["touched"] is True
