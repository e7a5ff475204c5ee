"""End-to-end tests of the worker wiring with a mocked ffmpeg runner."""

import json
from unittest.mock import MagicMock

import pytest

from video_converter import service
from video_converter.ffmpeg_runner import FfmpegResult
from video_converter.models import ConverterConfig
from video_converter.queue.models import RetryPolicy
from video_converter.transcoder import DashTranscoder


@pytest.fixture
def config(temp_db):
    return ConverterConfig.from_dict({
        "database": {"path": temp_db},
        "queue": {
            "poll_interval_s": 0.01,
            "retry": RetryPolicy(backoff_base_s=60.0).model_dump(),
        },
        "worker": {"n_workers": 2, "backlog": 1, "worker_id": "test"},
    })


@pytest.fixture
def transcoder():
    runner = MagicMock()
    runner.convert_to_dash.return_value = FfmpegResult(
        success=True, returncode=0, output="", duration_s=0.1
    )
    return DashTranscoder(runner)


class TestRunWorker:
    def test_drains_queue(self, config, transcoder, make_upload):
        uploads = [
            make_upload({"0.chunk": b"a", "1.chunk": b"b"}, name=f"uploads/{i}") for i in (1, 2)
        ]
        for i, upload in enumerate(uploads, start=1):
            service.enqueue_job(config, video_id=i, path=str(upload))
        # Same video twice: the second delivery is a duplicate or waits on the claim
        service.enqueue_job(config, video_id=1, path=str(uploads[0]))

        components = service.build_components(config, transcoder=transcoder)
        stats = service.run_worker(config, drain=True, components=components)

        assert stats.get("completed") == 2
        assert sum(stats.values()) == 3
        assert components.store.is_processed(1)
        assert components.store.is_processed(2)
        assert len(components.store.list_processed()) == 2

        confirmations = []
        while True:
            delivery = components.broker.receive(config.queue.confirmation_queue, "downstream")
            if delivery is None:
                break
            confirmations.append(json.loads(delivery.body)["video_id"])
        assert sorted(confirmations) == [1, 2]

    def test_recovers_stale_deliveries_on_start(self, config, transcoder, make_upload):
        upload = make_upload({"0.chunk": b"a"})
        service.enqueue_job(config, video_id=7, path=str(upload))
        components = service.build_components(config, transcoder=transcoder)

        # Simulate a worker that died mid-delivery
        delivery = components.broker.receive(config.queue.conversion_queue, "dead-worker")
        components.database.db["messages"].update(
            delivery.message_id, {"last_heartbeat": "2000-01-01T00:00:00.000000"}
        )

        stats = service.run_worker(config, drain=True, components=components)

        assert stats == {"completed": 1}
        assert components.store.is_processed(7)


class TestQueueManagement:
    def test_stats_retry_and_clear(self, config):
        message_id = service.enqueue_job(config, video_id=1, path="p")
        stats = service.get_queue_stats(config)

        assert stats[config.queue.conversion_queue]["pending"] == 1
        assert stats[config.queue.confirmation_queue]["total"] == 0

        broker = service._open_broker(config)
        broker.receive(config.queue.conversion_queue, "c")
        for _ in range(config.queue.retry.max_attempts):
            broker.nack(message_id)
            broker.database.db["messages"].update(
                message_id, {"available_at": "2000-01-01T00:00:00.000000"}
            )
            broker.receive(config.queue.conversion_queue, "c")

        assert service.get_queue_stats(config)[config.queue.conversion_queue]["dead_lettered"] == 1
        assert service.retry_dead_letters(config) == 1
        assert service.get_queue_stats(config)[config.queue.conversion_queue]["pending"] == 1

        assert service.clear_queue(config) == 0
        assert service.clear_queue(config, include_unfinished=True) == 1

    def test_list_errors(self, config):
        components = service.build_components(config, transcoder=MagicMock())
        components.converter.reporter.report(None, "deserialize", ValueError("bad"))

        errors = service.list_errors(config, limit=5)
        assert errors[0]["error_details"]["stage"] == "deserialize"
