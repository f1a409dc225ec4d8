import pytest

from conftest import FakeProvider, pad_html
from harvest_engine import job_manager, notifications, pipeline_stages, task_queue
from harvest_engine.models import (
    DiscoverPayload, EmailSource, ExtractPayload, FetchResult, GeneratePayload,
    JobCreateRequest, TaskStatus, TaskType,
)
from harvest_engine.search_provider import ProviderAuthError


def _job(**kw):
    params = dict(name="j", niche="dentists", search_depth=1)
    params.update(kw)
    job_id = job_manager.create_job(JobCreateRequest(**params))
    return job_id, job_manager.get_job(job_id)


def _claim(task_type):
    return task_queue.claim_next(task_type, "test")


def _page(url, body, title=""):
    return FetchResult(url=url, content=pad_html(body, title), http_status=200,
                       content_type="text/html", success=True)


@pytest.mark.parametrize("url,ok", [
    ("https://clinic.com/contact", True),
    ("http://sub.clinic.co.uk", True),
    ("ftp://clinic.com", False),
    ("/relative/path", False),
    ("https://www.google.com/maps?q=x", False),
    ("https://maps.google.co.uk/x", False),
    ("https://m.facebook.com/clinic", False),
    ("https://www.youtube.com/watch?v=1", False),
    ("https://localhost/x", False),
    ("http://clinic.com:abc/", False),
    ("http://clinic.com:99999/", False),
    ("http://clinic.com:8080/contact", True),
])
def test_is_crawlable_url(url, ok):
    assert pipeline_stages.is_crawlable_url(url) is ok


# ── discover ──


def test_discover_enqueues_filtered_unique_urls():
    job_id, _ = _job()
    task = _claim(TaskType.DISCOVER)
    provider = FakeProvider({"dentists": [
        ("https://clinic-a.com", "Clinic A"),
        ("https://clinic-a.com", "Clinic A again"),
        ("https://www.facebook.com/clinic", "FB"),
        ("https://clinic-b.com/about", "Clinic B"),
    ]})
    payload = DiscoverPayload(query="dentists", niche="dentists")
    n = pipeline_stages.discover(task, payload, provider, result_types=["web", "places"])

    assert n == 2
    assert [c[2].value for c in provider.calls] == ["web", "places"]
    extracts = task_queue.list_tasks(job_id, task_type=TaskType.EXTRACT)
    assert [t.payload["url"] for t in extracts] == ["https://clinic-a.com", "https://clinic-b.com/about"]
    assert extracts[0].payload["company_name"] == "Clinic A"
    assert extracts[0].payload["source"] == "fake"
    assert extracts[0].priority == 2


def test_discover_zero_urls_raises_alert_not_failure():
    job_id, _ = _job()
    task = _claim(TaskType.DISCOVER)
    n = pipeline_stages.discover(task, DiscoverPayload(query="nothing"), FakeProvider())
    assert n == 0
    alerts = notifications.recent_alerts(job_id=job_id)
    assert alerts[0]["kind"] == "zero_results"
    assert alerts[0]["level"] == "warning"


def test_discover_provider_error_alerts_and_raises():
    job_id, _ = _job()
    task = _claim(TaskType.DISCOVER)
    provider = FakeProvider(error=ProviderAuthError("bad key"))
    with pytest.raises(ProviderAuthError):
        pipeline_stages.discover(task, DiscoverPayload(query="q"), provider)
    alerts = notifications.recent_alerts(job_id=job_id)
    assert alerts[0]["kind"] == "provider_error"
    assert alerts[0]["level"] == "error"
    assert alerts[0]["task_id"] == task.id


# ── extract ──


def _extract_task(job_id, url, company=""):
    task_queue.enqueue(job_id, TaskType.EXTRACT, ExtractPayload(url=url, company_name=company))
    return _claim(TaskType.EXTRACT)


def test_extract_stores_classified_emails():
    job_id, job = _job()
    task = _extract_task(job_id, "https://acme.com")
    sink = pipeline_stages.EmailSink(job_id)
    page = _page(task.payload["url"],
                 '<a href="mailto:ceo@acme.com">CEO</a> Contact: info [at] acme [dot] com, '
                 'owner.jane@gmail.com, user@example.com', title="Acme Corp")
    n = pipeline_stages.extract(task, ExtractPayload(**task.payload), page, job, sink)

    assert n == 3
    emails = {e["email"]: e for e in job_manager.list_emails(job_id)}
    assert set(emails) == {"ceo@acme.com", "info@acme.com", "owner.jane@gmail.com"}
    assert emails["ceo@acme.com"]["email_type"] == "executive"
    assert emails["info@acme.com"]["email_type"] == "domain"
    assert emails["owner.jane@gmail.com"]["email_type"] == "personal"
    assert emails["info@acme.com"]["source"] == EmailSource.EXTRACTED.value
    assert emails["info@acme.com"]["company_name"] == "Acme Corp"
    assert job_manager.get_job(job_id)["total_emails"] == 3
    assert sink.store.count() == 3


def test_extract_respects_job_email_type():
    job_id, job = _job(email_type="executive")
    task = _extract_task(job_id, "https://acme.com")
    sink = pipeline_stages.EmailSink(job_id)
    page = _page(task.payload["url"], "ceo@acme.com info@acme.com someone@gmail.com")
    assert pipeline_stages.extract(task, ExtractPayload(**task.payload), page, job, sink) == 1
    assert [e["email"] for e in job_manager.list_emails(job_id)] == ["ceo@acme.com"]


def test_extract_bloom_suppresses_repeat_within_job():
    job_id, job = _job()
    sink = pipeline_stages.EmailSink(job_id)
    t1 = _extract_task(job_id, "https://a.com")
    pipeline_stages.extract(t1, ExtractPayload(**t1.payload), _page("https://a.com", "hi@a.com"), job, sink)
    t2 = _extract_task(job_id, "https://a.com/contact")
    n = pipeline_stages.extract(t2, ExtractPayload(**t2.payload),
                                _page("https://a.com/contact", "hi@a.com"), job, sink)
    assert n == 0
    assert job_manager.get_job(job_id)["total_emails"] == 1
    # Persisted filter is picked up by a fresh sink
    assert pipeline_stages.EmailSink(job_id).bloom.bits_set() > 0


def test_same_email_allowed_in_another_job():
    job_a, ja = _job()
    job_b, jb = _job()
    for job_id, job in ((job_a, ja), (job_b, jb)):
        t = _extract_task(job_id, "https://shared.com")
        n = pipeline_stages.extract(t, ExtractPayload(**t.payload),
                                    _page("https://shared.com", "hi@shared.com"), job,
                                    pipeline_stages.EmailSink(job_id))
        assert n == 1


def test_extract_no_emails_queues_generate():
    job_id, job = _job()
    task = _extract_task(job_id, "https://www.Quiet-Clinic.com/about", company="Quiet Clinic")
    n = pipeline_stages.extract(task, ExtractPayload(**task.payload),
                                _page(task.payload["url"], "no addresses here"), job,
                                pipeline_stages.EmailSink(job_id))
    assert n == 0
    gens = task_queue.list_tasks(job_id, task_type=TaskType.GENERATE)
    assert len(gens) == 1
    assert gens[0].payload["domain"] == "quiet-clinic.com"
    assert gens[0].payload["company_name"] == "Quiet Clinic"
    assert gens[0].priority == 3


def test_extract_failed_fetch_raises_stage_error():
    job_id, job = _job()
    task = _extract_task(job_id, "https://down.com")
    page = FetchResult(url="https://down.com", error="HTTP 503", http_status=503)
    with pytest.raises(pipeline_stages.StageError, match="HTTP 503"):
        pipeline_stages.extract(task, ExtractPayload(**task.payload), page, job,
                                pipeline_stages.EmailSink(job_id))
    assert task_queue.list_tasks(job_id, task_type=TaskType.GENERATE) == []


# ── generate ──


def test_generate_candidates():
    c = pipeline_stages.generate_candidates("Clinic.com", "Bright Smile Dental")
    assert c[0] == "info@clinic.com"
    assert "bright-smile-dental@clinic.com" in c
    assert "hello@bright-smile-dental.clinic.com" in c
    assert len(c) == len(set(c))
    assert len(pipeline_stages.generate_candidates("clinic.com")) == len(pipeline_stages.ROLE_LOCAL_PARTS)


def test_generate_stores_domain_type_generated_source():
    job_id, job = _job()
    task_queue.enqueue(job_id, TaskType.GENERATE, GeneratePayload(domain="clinic.com", company_name="Clinic"))
    task = _claim(TaskType.GENERATE)
    n = pipeline_stages.generate(task, GeneratePayload(**task.payload), job,
                                 pipeline_stages.EmailSink(job_id))
    emails = job_manager.list_emails(job_id)
    assert n == len(emails) == len(pipeline_stages.ROLE_LOCAL_PARTS) + 2
    assert {e["source"] for e in emails} == {"generated"}
    assert {e["email_type"] for e in emails} == {"domain"}


def test_generate_placeholder_domain_fails():
    job_id, job = _job()
    task_queue.enqueue(job_id, TaskType.GENERATE, GeneratePayload(domain="bad_domain"))
    task = _claim(TaskType.GENERATE)
    with pytest.raises(pipeline_stages.StageError):
        pipeline_stages.generate(task, GeneratePayload(**task.payload), job,
                                 pipeline_stages.EmailSink(job_id))
    assert task_queue.get_task(task.id).status == TaskStatus.PROCESSING
