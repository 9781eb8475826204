import logging

from media_rec.progress import JobProgress


def test_job_lifecycle_and_callback():
    seen = []
    progress = JobProgress(on_update=lambda job: seen.append((job.status, job.step, job.current)))

    progress.start("j1", "batch", 2)
    progress.set_step("j1", 1, "Generating", 10)
    progress.update("j1", 5, 10, "user-1")
    progress.complete("j1", {"success": 10})

    job = progress.jobs["j1"]
    assert job.status == "completed"
    assert job.percent == 50.0
    assert job.current_item == "user-1"
    assert job.result == {"success": 10}
    assert job.finished_at is not None
    assert seen[0] == ("running", 0, 0)
    assert seen[-1] == ("completed", 1, 5)


def test_fail_records_error():
    progress = JobProgress()
    progress.start("j1", "batch", 1)

    progress.fail("j1", "store unavailable")

    assert progress.jobs["j1"].status == "failed"
    assert progress.jobs["j1"].error == "store unavailable"


def test_logs_are_bounded_and_mirrored(caplog):
    progress = JobProgress(max_logs=3)

    with caplog.at_level(logging.INFO, logger="media_rec.progress"):
        for i in range(5):
            progress.log("j1", "warn" if i == 4 else "info", f"line {i}")

    assert [m for _, m in progress.jobs["j1"].logs] == ["line 2", "line 3", "line 4"]
    assert any(r.levelno == logging.WARNING and "line 4" in r.getMessage() for r in caplog.records)


def test_percent_without_total():
    progress = JobProgress()
    progress.set_step("unknown-job", 0, "Counting")

    assert progress.jobs["unknown-job"].percent == 0.0
