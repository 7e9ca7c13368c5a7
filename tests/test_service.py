"""End-to-end pipeline tests with fake external services."""

import threading
import time
from io import BytesIO

import pytest
from pypdf import PdfReader

from form_fulfillment import FulfillmentError, FulfillmentService
from form_fulfillment.jobs import JobStore
from form_fulfillment.records import STAMP_FAILED, UPLOAD_FAILED, UPLOADED
from tests.conftest import FakeNotifier, FakeUploader, fake_stamp
from tests.test_notifier import FakeSMTP, make_notifier


def merged_serials(sent):
    pages = PdfReader(BytesIO(sent["pdf_bytes"])).pages
    return [p.extract_text().split()[0] for p in pages]


def csv_lines(sent):
    return sent["csv_text"].strip().splitlines()


def run(service, records, key=None):
    report, created = service.submit({"records": records}, key)
    assert created
    return service.run_batch(report.batch_id)


def test_out_of_order_records_merge_in_serial_order(service, notifier):
    report = run(service, [
        {"email": "a@x.com", "serialNumber": "2", "qrCodeUrl": "http://q/2", "recordId": "rec2"},
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1", "recordId": "rec1"},
    ])

    assert report.status == "completed"
    assert len(notifier.sent) == 1
    sent = notifier.sent[0]
    assert sent["recipient"] == "a@x.com"
    assert merged_serials(sent) == ["SERIAL-1", "SERIAL-2"]
    assert csv_lines(sent)[1:] == [
        "'1,https://files.example.com/Hatua_Application_1.pdf",
        "'2,https://files.example.com/Hatua_Application_2.pdf",
    ]


def test_records_without_email_are_excluded_everywhere(service, uploader, notifier):
    report = run(service, [
        {"serialNumber": "5", "qrCodeUrl": "http://q/5", "recordId": "rec5"},
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1", "recordId": "rec1"},
    ])

    assert [g.email for g in report.groups] == ["a@x.com"]
    assert [name for _, name in uploader.uploads] == ["Hatua_Application_1.pdf"]
    assert [s["recipient"] for s in notifier.sent] == ["a@x.com"]
    assert "'5" not in notifier.sent[0]["csv_text"]


def test_failed_stamp_skips_only_that_record(settings, uploader, tracker, notifier):
    service = FulfillmentService(
        settings, uploader, tracker, notifier,
        jobs=JobStore(settings.jobs_dir), stamp=fake_stamp(fail_serials=["2"]),
    )
    report = run(service, [
        {"email": "a@x.com", "serialNumber": "3", "qrCodeUrl": "http://q/3", "recordId": "rec3"},
        {"email": "a@x.com", "serialNumber": "2", "qrCodeUrl": "http://unreachable/2", "recordId": "rec2"},
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1", "recordId": "rec1"},
    ])

    outcomes = {r.serial_number: r for r in report.groups[0].records}
    assert outcomes["2"].status == STAMP_FAILED
    assert outcomes["1"].status == outcomes["3"].status == UPLOADED
    assert merged_serials(notifier.sent[0]) == ["SERIAL-1", "SERIAL-3"]
    assert [line.split(",")[0] for line in csv_lines(notifier.sent[0])[1:]] == ["'1", "'3"]
    assert ("rec2", None) not in tracker.updates


def test_upload_failure_keeps_document_with_placeholder_link(settings, tracker, notifier):
    uploader = FakeUploader(fail_for=["Hatua_Application_1.pdf"])
    service = FulfillmentService(
        settings, uploader, tracker, notifier, jobs=JobStore(settings.jobs_dir), stamp=fake_stamp()
    )
    report = run(service, [
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1", "recordId": "rec1"},
        {"email": "a@x.com", "serialNumber": "2", "qrCodeUrl": "http://q/2", "recordId": "rec2"},
    ])

    outcome = report.groups[0].records[0]
    assert outcome.status == UPLOAD_FAILED and not outcome.tracker_updated
    assert tracker.updates == [("rec2", "https://files.example.com/Hatua_Application_2.pdf")]
    assert csv_lines(notifier.sent[0])[1] == "'1,N/A"


def test_group_without_valid_pdfs_is_skipped(settings, uploader, tracker):
    notifier = FakeNotifier()
    service = FulfillmentService(
        settings, uploader, tracker, notifier,
        jobs=JobStore(settings.jobs_dir), stamp=fake_stamp(fail_serials=["1"]),
    )
    report = run(service, [
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"},
        {"email": "b@x.com", "serialNumber": "2", "qrCodeUrl": "http://q/2"},
        {"email": "c@x.com", "qrCodeUrl": "http://q/none"},
    ])

    by_email = {g.email: g for g in report.groups}
    assert by_email["a@x.com"].skipped_reason == "no valid PDFs generated"
    assert by_email["c@x.com"].skipped_reason == "no valid PDFs generated"
    assert by_email["b@x.com"].email_sent is True
    assert [s["recipient"] for s in notifier.sent] == ["b@x.com"]


def test_tracker_gets_link_for_each_uploaded_record(service, tracker):
    run(service, [
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1", "recordId": "rec1"},
        {"email": "b@x.com", "serialNumber": "9", "qrCodeUrl": "http://q/9", "recordId": "rec9"},
    ])
    assert tracker.updates == [
        ("rec1", "https://files.example.com/Hatua_Application_1.pdf"),
        ("rec9", "https://files.example.com/Hatua_Application_9.pdf"),
    ]


def test_each_applicant_gets_own_files_and_phone(service, notifier):
    run(service, [
        {"email": "a@x.com", "phoneNumber": "0711", "serialNumber": "1", "qrCodeUrl": "http://q/1"},
        {"email": "b@x.com", "phoneNumber": "0722", "serialNumber": "2", "qrCodeUrl": "http://q/2"},
        {"email": "a@x.com", "phoneNumber": "0799", "serialNumber": "3", "qrCodeUrl": "http://q/3"},
    ])

    a, b = notifier.sent
    assert a["pdf_path"] != b["pdf_path"]
    assert (a["phone_number"], b["phone_number"]) == ("0711", "0722")
    assert merged_serials(a) == ["SERIAL-1", "SERIAL-3"]
    assert merged_serials(b) == ["SERIAL-2"]


def test_work_files_removed_after_batch(service, settings):
    report = run(service, [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}])
    assert not (settings.work_root / report.batch_id).exists()


def test_work_files_kept_when_configured(service, settings):
    settings.keep_work_files = True
    report = run(service, [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}])
    group = report.groups[0]
    assert (settings.work_root / report.batch_id).exists()
    assert group.merged_pdf.startswith(str(settings.work_root / report.batch_id))


def test_completed_batch_is_not_reprocessed(service, notifier):
    report = run(service, [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}])
    service.run_batch(report.batch_id)
    assert len(notifier.sent) == 1


def test_unexpected_error_marks_batch_failed(service, monkeypatch):
    def boom(records, batch_dir):
        raise RuntimeError("work dir vanished")

    monkeypatch.setattr(service, "process_records", boom)
    report = run(service, [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}])

    assert report.status == "failed"
    assert report.error == "work dir vanished"
    assert service.get_batch(report.batch_id).status == "failed"


def test_failing_applicant_does_not_stop_the_next(settings, uploader, tracker):
    class ExplodingNotifier(FakeNotifier):
        def send(self, recipient, *args):
            if recipient == "a@x.com":
                raise RuntimeError("relay exploded")
            return super().send(recipient, *args)

    notifier = ExplodingNotifier()
    service = FulfillmentService(
        settings, uploader, tracker, notifier, jobs=JobStore(settings.jobs_dir), stamp=fake_stamp()
    )
    report = run(service, [
        {"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"},
        {"email": "b@x.com", "serialNumber": "2", "qrCodeUrl": "http://q/2"},
    ])

    assert report.status == "completed"
    a, b = report.groups
    assert a.skipped_reason == "processing failed: relay exploded"
    assert not a.email_sent
    assert b.email_sent is True
    assert [s["recipient"] for s in notifier.sent] == ["b@x.com"]


def test_numeric_phone_number_is_emailed(settings, uploader, tracker, monkeypatch):
    monkeypatch.setattr(FakeSMTP, "instances", [])
    service = FulfillmentService(
        settings, uploader, tracker, make_notifier(), jobs=JobStore(settings.jobs_dir), stamp=fake_stamp()
    )
    report = run(service, [
        {"email": "a@x.com", "phoneNumber": 711000000, "serialNumber": "1", "qrCodeUrl": "http://q/1"},
    ])

    assert report.groups[0].email_sent is True
    msg = FakeSMTP.instances[0].messages[0]
    assert "at 711000000 about" in msg.get_body(preferencelist=("plain",)).get_content()


def test_concurrent_runners_process_batch_once(settings, uploader, tracker):
    class SlowNotifier(FakeNotifier):
        def send(self, *args):
            time.sleep(0.3)
            return super().send(*args)

    notifier = SlowNotifier()
    # Two workers, each with its own store over the same job directory
    workers = [
        FulfillmentService(settings, uploader, tracker, notifier, jobs=JobStore(settings.jobs_dir), stamp=fake_stamp())
        for _ in range(2)
    ]
    report, _ = workers[0].submit({"records": [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}]})

    barrier = threading.Barrier(2)

    def work(service, runner_id):
        barrier.wait()
        service.run_batch(report.batch_id, runner_id=runner_id)

    threads = [threading.Thread(target=work, args=(s, f"task-{i}")) for i, s in enumerate(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(notifier.sent) == 1
    assert JobStore(settings.jobs_dir).get(report.batch_id).status == "completed"


def test_redelivered_task_resumes_its_own_claim(service, notifier):
    report, _ = service.submit({"records": [{"email": "a@x.com", "serialNumber": "1", "qrCodeUrl": "http://q/1"}]})
    service.jobs.claim(report.batch_id, "task-1")  # worker died mid-run

    assert service.run_batch(report.batch_id, runner_id="task-2").status == "processing"
    assert notifier.sent == []

    resumed = service.run_batch(report.batch_id, runner_id="task-1")
    assert resumed.status == "completed"
    assert resumed.runner_id == "task-1"
    assert len(notifier.sent) == 1


def test_unknown_batch_raises(service):
    with pytest.raises(FulfillmentError):
        service.get_batch("nope")
