import pytest

from omnicrm.jobs import domain
from omnicrm.jobs.dispatcher import JobDispatcher, ProcessorRegistry
from omnicrm.jobs.domain import JobKind, JobPayload, JobStatus, register_payload_model
from omnicrm.jobs.enqueue import enqueue
from omnicrm.jobs.errors import InvalidPayloadError, NoHandlerRegisteredError, UnknownJobKindError
from omnicrm.jobs.processors import DEFAULT_PROCESSORS, build_default_registry
from omnicrm.jobs.runner import JobRunner


class ExportPayload(JobPayload):
    fmt: str = "csv"


@pytest.fixture
def runtime_models(monkeypatch):
    models = {}
    monkeypatch.setattr(domain, "EXTRA_PAYLOAD_MODELS", models)
    return models


def test_default_registry_covers_every_kind():
    registry = build_default_registry()

    assert registry.missing_kinds() == []
    assert len(registry) == len(JobKind)


def test_build_default_registry_fails_on_missing_kind(monkeypatch):
    processors = dict(DEFAULT_PROCESSORS)
    processors.pop(JobKind.INSIGHT)
    monkeypatch.setattr("omnicrm.jobs.processors.DEFAULT_PROCESSORS", processors)

    with pytest.raises(RuntimeError, match="insight"):
        build_default_registry()


def test_register_runtime_kind():
    async def processor(job):
        return None

    registry = ProcessorRegistry()
    registry.register("custom_export", processor)

    assert "custom_export" in registry
    assert registry.get("custom_export") is processor
    assert "custom_export" in registry.kinds()


@pytest.mark.asyncio
async def test_runtime_kind_enqueued_and_dispatched(job_store, runtime_models):
    seen = []

    async def export(job):
        seen.append((job.id, job.payload))

    registry = build_default_registry()
    registry.register("custom_export", export, payload_model=ExportPayload)

    job_id = await enqueue("custom_export", {"fmt": "json"}, "user-1")
    summary = await JobRunner(JobDispatcher(registry), repository=job_store).process_jobs()

    assert summary.succeeded == 1
    assert seen == [(job_id, ExportPayload(fmt="json"))]
    assert job_store.status_of(job_id) == JobStatus.DONE


@pytest.mark.asyncio
async def test_runtime_kind_payload_is_validated(job_store, runtime_models):
    registry = ProcessorRegistry()
    registry.register("custom_export", lambda job: None, payload_model=ExportPayload)

    with pytest.raises(InvalidPayloadError):
        await enqueue("custom_export", {"unexpected": 1}, "user-1")

    assert job_store.rows == {}


@pytest.mark.asyncio
async def test_runtime_kind_without_payload_model_rejected(job_store, runtime_models):
    async def export(job):
        return None

    ProcessorRegistry().register("custom_export", export)

    with pytest.raises(UnknownJobKindError):
        await enqueue("custom_export", {}, "user-1")


def test_builtin_payload_model_cannot_be_replaced(runtime_models):
    with pytest.raises(ValueError, match="built-in"):
        register_payload_model("embed", ExportPayload)

    assert runtime_models == {}


@pytest.mark.asyncio
async def test_dispatch_invokes_processor(make_job):
    seen = []

    async def processor(job):
        seen.append(job.id)
        return {"ok": True}

    dispatcher = JobDispatcher(ProcessorRegistry({JobKind.EMBED: processor}))

    result = await dispatcher.dispatch(make_job(JobKind.EMBED, {"ownerType": "interaction"}))

    assert result == {"ok": True}
    assert seen == ["job-1"]


@pytest.mark.asyncio
async def test_dispatch_without_handler(make_job):
    dispatcher = JobDispatcher(ProcessorRegistry())

    with pytest.raises(NoHandlerRegisteredError):
        await dispatcher.dispatch(make_job(JobKind.EMBED))


@pytest.mark.asyncio
async def test_dispatch_unknown_kind_string(make_job):
    dispatcher = JobDispatcher(build_default_registry())

    with pytest.raises(NoHandlerRegisteredError) as exc:
        await dispatcher.dispatch(make_job("fax_send"))

    assert exc.value.job_kind == "fax_send"


@pytest.mark.asyncio
async def test_dispatch_rejects_stale_payload(make_job):
    async def processor(job):
        raise AssertionError("should not run")

    dispatcher = JobDispatcher(ProcessorRegistry({JobKind.EMBED: processor}))

    with pytest.raises(InvalidPayloadError):
        await dispatcher.dispatch(make_job(JobKind.EMBED, {"ownerType": "spreadsheet"}))


@pytest.mark.asyncio
async def test_dispatch_propagates_processor_errors_unchanged(make_job):
    error = ConnectionError("provider down")

    async def processor(job):
        raise error

    dispatcher = JobDispatcher(ProcessorRegistry({JobKind.EMBED: processor}))

    with pytest.raises(ConnectionError) as exc:
        await dispatcher.dispatch(make_job(JobKind.EMBED))

    assert exc.value is error
