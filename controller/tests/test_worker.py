"""Tests for the queue worker."""

from controller.src import worker

async def test_job_is_acknowledged_even_when_execution_fails(monkeypatch):
    acked = []

    async def fake_dequeue(timeout=5):
        return '{"build_id": "b1", "attempt": 0}', {"build_id": "b1", "attempt": 0}

    async def fake_ack(raw):
        acked.append(raw)

    async def failing_execute(job):
        raise RuntimeError("database went away")

    monkeypatch.setattr(worker, "dequeue_build", fake_dequeue)
    monkeypatch.setattr(worker, "ack_build", fake_ack)
    monkeypatch.setattr(worker, "execute_build", failing_execute)

    assert await worker.process_next_build() is True
    assert acked == ['{"build_id": "b1", "attempt": 0}']

async def test_empty_queue(monkeypatch):
    async def fake_dequeue(timeout=5):
        return None

    monkeypatch.setattr(worker, "dequeue_build", fake_dequeue)
    assert await worker.process_next_build() is False
