import httpx

from conftest import FakeFetcher, FakeProvider, pad_html
from harvest_engine import job_manager, task_queue
from harvest_engine.db.init_db import get_conn
from harvest_engine.models import (
    ExtractPayload, GeneratePayload, JobCreateRequest, TaskStatus, TaskType,
)
from harvest_engine.parallel_fetcher import ParallelFetcher
from harvest_engine.search_provider import ProviderRateLimitError
from harvest_engine.worker import WorkerLoop, list_workers, request_stop


def _job(**kw):
    params = dict(name="j", niche="dentists", search_depth=2)
    params.update(kw)
    return job_manager.create_job(JobCreateRequest(**params))


def _loop(task_type, **kw):
    kw.setdefault("max_idle_checks", 1)
    kw.setdefault("idle_sleep", 0)
    return WorkerLoop(task_type, **kw)


def test_discover_worker_processes_all_and_exits_when_idle():
    job_id = _job()
    provider = FakeProvider({
        "dentists": [("https://a.com", "A")],
        "dentists companies": [("https://b.com", "B")],
    })
    loop = _loop(TaskType.DISCOVER, worker_id="d1", provider=provider)
    assert loop.run() == 2

    counts = task_queue.counts_by_status(job_id)
    assert counts["completed"] == 2
    assert counts["pending"] == 2  # the new extract tasks
    worker = [w for w in list_workers() if w["worker_id"] == "d1"][0]
    assert worker["status"] == "stopped"
    assert worker["tasks_processed"] == 2


def test_failures_are_recorded_and_loop_continues():
    job_id = _job()
    provider = FakeProvider(error=ProviderRateLimitError("quota"))
    loop = _loop(TaskType.DISCOVER, provider=provider)
    assert loop.run() == 2
    assert loop.failed == 2
    failed = task_queue.list_tasks(job_id, TaskStatus.FAILED)
    assert len(failed) == 2
    assert "ProviderRateLimitError: quota" in failed[0].error_message


def test_max_tasks_bound():
    _job(search_depth=5)
    loop = _loop(TaskType.DISCOVER, provider=FakeProvider(), max_tasks=3)
    assert loop.run() == 3
    assert task_queue.pending_count(TaskType.DISCOVER) == 2


def test_invalid_payload_fails_task_not_loop():
    job_id = _job(search_depth=1)
    task_queue.claim_next(TaskType.DISCOVER, "x")  # take the discover task out of the way
    tid = task_queue.enqueue(job_id, TaskType.GENERATE, GeneratePayload(domain="ok.com"))
    conn = get_conn()
    conn.execute("UPDATE queue SET payload = ? WHERE id = ?", ('{"kind": "generate"}', tid))
    conn.commit()
    conn.close()

    loop = _loop(TaskType.GENERATE)
    assert loop.run() == 1
    task = task_queue.get_task(tid)
    assert task.status == TaskStatus.FAILED
    assert "ValidationError" in task.error_message


def test_extract_worker_batches_fetches():
    job_id = _job(search_depth=1)
    urls = [f"https://site{i}.com" for i in range(4)]
    for u in urls:
        task_queue.enqueue(job_id, TaskType.EXTRACT, ExtractPayload(url=u))
    fetcher = FakeFetcher({
        urls[0]: pad_html("info@site0.com"),
        urls[1]: pad_html("nothing here"),
        urls[2]: pad_html("sales@site2.com ceo@site2.com"),
    })
    loop = _loop(TaskType.EXTRACT, fetcher=fetcher, parallelism=4)
    assert loop.run() == 4
    assert sorted(fetcher.requested) == sorted(urls)

    extracts = {t.payload["url"]: t for t in task_queue.list_tasks(job_id, task_type=TaskType.EXTRACT)}
    assert extracts[urls[3]].status == TaskStatus.FAILED
    assert extracts[urls[3]].error_message == "StageError: HTTP 404"
    assert extracts[urls[0]].status == TaskStatus.COMPLETED
    assert job_manager.get_job(job_id)["total_emails"] == 3
    gens = task_queue.list_tasks(job_id, task_type=TaskType.GENERATE)
    assert [g.payload["domain"] for g in gens] == ["site1.com"]


def test_operator_stop_request():
    _job(search_depth=3)
    provider = FakeProvider()
    loop = _loop(TaskType.DISCOVER, worker_id="d9", provider=provider, max_idle_checks=5)

    original_search = provider.search

    def search_then_stop(*a, **kw):
        request_stop("discover")
        return original_search(*a, **kw)

    provider.search = search_then_stop
    assert loop.run() == 1
    assert task_queue.pending_count(TaskType.DISCOVER) == 2


def test_stop_method_finishes_current_task():
    _job(search_depth=3)
    provider = FakeProvider()
    loop = _loop(TaskType.DISCOVER, provider=provider)
    original_search = provider.search

    def search_then_stop(*a, **kw):
        loop.stop()
        return original_search(*a, **kw)

    provider.search = search_then_stop
    assert loop.run() == 1


def test_extract_batch_with_malformed_url_fails_only_that_task():
    job_id = _job(search_depth=1)
    good, bad = "https://good.com/", "http://good.com:abc/"
    for u in (good, bad):
        task_queue.enqueue(job_id, TaskType.EXTRACT, ExtractPayload(url=u))

    def handler(request):
        return httpx.Response(200, text=pad_html("office@good.com"),
                              headers={"content-type": "text/html"})

    fetcher = ParallelFetcher(max_in_flight=2, transport=httpx.MockTransport(handler))
    loop = _loop(TaskType.EXTRACT, fetcher=fetcher, parallelism=2)
    assert loop.run() == 2

    extracts = {t.payload["url"]: t for t in task_queue.list_tasks(job_id, task_type=TaskType.EXTRACT)}
    assert extracts[good].status == TaskStatus.COMPLETED
    assert extracts[bad].status == TaskStatus.FAILED
    assert "InvalidURL" in extracts[bad].error_message
    assert task_queue.processing_count() == 0


def test_extract_batch_fails_tasks_when_fetcher_raises():
    job_id = _job(search_depth=1)
    for u in ("https://one.com", "https://two.com"):
        task_queue.enqueue(job_id, TaskType.EXTRACT, ExtractPayload(url=u))

    class BrokenFetcher(FakeFetcher):
        def fetch_many(self, urls, on_result=None):
            raise RuntimeError("event loop gone")

    loop = _loop(TaskType.EXTRACT, fetcher=BrokenFetcher(), parallelism=2)
    assert loop.run() == 2
    assert loop.failed == 2
    failed = task_queue.list_tasks(job_id, TaskStatus.FAILED, TaskType.EXTRACT)
    assert len(failed) == 2
    assert all(t.error_message == "RuntimeError: event loop gone" for t in failed)
    assert task_queue.processing_count() == 0
