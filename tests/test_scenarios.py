"""End-to-end scenarios over a whole Cloud.

The movie review deployment: an ``averageStars`` function over stored
reviews and a beforeSave trigger that bounds ``stars``.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from cloudcode.cloud import Cloud
from cloudcode.exceptions import ValidationRejection
from cloudcode.models.config import EngineConfig
from cloudcode.models.entity import Entity
from cloudcode.models.outcome import Success, TriggerKind
from cloudcode.storage.repositories import ObjectStore
from tests.conftest import FAST_FUNCTION_TIMEOUT, FAST_TRIGGER_TIMEOUT, review


def average_stars(request, response):
    reviews = request.objects.query("Review").equal_to("movie", request.params["movie"]).find()
    if not reviews:
        response.error("movie lookup failed")
        return
    response.success(sum(r["stars"] for r in reviews) / len(reviews))


def check_stars(request, response):
    if request.object.get("stars", 0) > 5:
        response.reject("you cannot give more than five stars")
        return
    response.allow()


@pytest.fixture
def mock_store():
    store = MagicMock(spec=ObjectStore)
    store.find.return_value = [
        Entity("Review", {"movie": "The Matrix", "stars": stars}, object_id=f"r{i}")
        for i, stars in enumerate([3, 4, 5, 5, 5])
    ]
    return store


@pytest.fixture
def mocked_cloud(mock_store):
    config = EngineConfig(
        function_timeout=FAST_FUNCTION_TIMEOUT,
        trigger_timeout=FAST_TRIGGER_TIMEOUT,
        persist_log=False,
    )
    c = Cloud.open(config=config, store=mock_store)
    yield c
    c.close(wait=False)


class TestAverageStars:
    def test_average_over_mocked_store(self, mocked_cloud, mock_store):
        mocked_cloud.define("averageStars", average_stars)

        outcome = mocked_cloud.run("averageStars", {"movie": "The Matrix"})

        assert outcome == Success(4.4)
        mock_store.find.assert_called_once_with("Review", {"movie": "The Matrix"}, limit=None)

    def test_wire_envelope(self, mocked_cloud):
        mocked_cloud.define("averageStars", average_stars)
        envelope = mocked_cloud.call({"name": "averageStars", "params": {"movie": "The Matrix"}})
        assert envelope == {"result": 4.4}

    def test_no_reviews(self, mocked_cloud, mock_store):
        mock_store.find.return_value = []
        mocked_cloud.define("averageStars", average_stars)
        envelope = mocked_cloud.call({"name": "averageStars", "params": {"movie": "Nope"}})
        assert envelope == {"code": 141, "error": "movie lookup failed"}


class TestStarsBound:
    def test_rejected_save_never_reaches_store(self, cloud):
        cloud.before_save("Review", check_stars)
        after = []
        cloud.after_save("Review", lambda req, res: after.append(req.object))

        with pytest.raises(ValidationRejection, match="more than five stars"):
            cloud.save(review(stars=6))

        assert cloud.query("Review").count() == 0
        assert after == []

    def test_valid_save_proceeds(self, cloud):
        cloud.before_save("Review", check_stars)
        committed = cloud.save(review(stars=5))
        assert committed.object_id is not None
        assert cloud.get("Review", committed.object_id)["stars"] == 5

    def test_rejection_with_mocked_store(self, mocked_cloud, mock_store):
        mocked_cloud.before_save("Review", check_stars)
        with pytest.raises(ValidationRejection):
            mocked_cloud.save(review(stars=6))
        mock_store.save.assert_not_called()


class TestReregistration:
    def test_latest_handler_wins(self, cloud):
        cloud.define("version", lambda req, res: res.success(1))
        cloud.define("version", lambda req, res: res.success(2))
        assert cloud.run("version") == Success(2)
        assert len(cloud.registry.registrations(TriggerKind.FUNCTION)) == 1

    def test_latest_trigger_wins(self, cloud):
        cloud.before_save("Review", lambda req, res: res.reject("old"))
        cloud.before_save("Review", check_stars)
        assert cloud.save(review(stars=4))["stars"] == 4


class TestConcurrentNestedSaves:
    """Handlers that save objects run their nested triggers while they wait."""

    @pytest.fixture
    def small_cloud(self):
        config = EngineConfig(function_timeout=2.0, trigger_timeout=1.0, max_workers=2)
        c = Cloud.open(config=config)
        yield c
        c.close(wait=False)

    def test_more_callers_than_workers(self, small_cloud):
        small_cloud.before_save("Review", check_stars)

        @small_cloud.define("addReview")
        def add_review(request, response):
            saved = request.objects.save(Entity("Review", dict(request.params)))
            response.success(saved.object_id)

        callers = 4
        with ThreadPoolExecutor(max_workers=callers) as pool:
            futures = [
                pool.submit(small_cloud.run, "addReview", {"movie": "Alien", "stars": 4})
                for _ in range(callers)
            ]
            outcomes = [f.result(timeout=10) for f in futures]

        assert all(isinstance(o, Success) for o in outcomes), outcomes
        assert small_cloud.query("Review").count() == callers
