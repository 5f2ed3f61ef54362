"""Job envelopes and the retry schedule."""

from datetime import datetime, timedelta, timezone

from journeyflow.contracts import JobEnvelope, OutboundJob, StepJob, TriggerJob
from journeyflow.utils.retry import compute_backoff


def test_envelope_json_keeps_job_type():
    envelope = JobEnvelope(
        name="journey.trigger",
        data=TriggerJob(trigger_type="tag_change", organization_id="org-1", tags=["a"]),
    )
    restored = JobEnvelope.from_json(envelope.to_json())
    assert isinstance(restored.data, TriggerJob)
    assert restored == envelope

    outbound = JobEnvelope.from_json(
        JobEnvelope(name="wa.send", data=OutboundJob(message_id="m-1")).to_json()
    )
    assert isinstance(outbound.data, OutboundJob)


def test_bump_attempt_creates_new_delivery():
    envelope = JobEnvelope(name="journey.step", data=StepJob(run_step_id="s-1"))
    assert not envelope.exhausted

    retry = envelope.bump_attempt().bump_attempt()
    assert retry.attempt == 3
    assert retry.job_id != envelope.job_id
    assert retry.data == envelope.data
    assert retry.exhausted


def test_schedule_sets_availability():
    now = datetime(2026, 3, 2, tzinfo=timezone.utc)
    envelope = JobEnvelope(name="journey.step", data=StepJob(run_step_id="s-1"))
    assert envelope.schedule(now, 250).available_at == now + timedelta(milliseconds=250)
    assert envelope.schedule(now, -10).available_at == now


def test_compute_backoff_is_exponential():
    assert [compute_backoff(a) for a in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
    assert compute_backoff(2, base_ms=500) == 1000
    assert 1000 <= compute_backoff(1, jitter_ms=100) <= 1100
