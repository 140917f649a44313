import time

from signal_scan.backend.agents.security import MAX_ERROR_CHARS, sanitize_for_logging, scrub_error_message


def test_scrub_redacts_paths_keys_and_connections():
    message = scrub_error_message(
        Exception("Cannot read /home/app/src/services/scanService.js using sk-proj-ABCdef123456 "
                  "via mongodb+srv://user:pw@cluster0.mongodb.net/db")
    )
    assert message == "Cannot read [file] using [key] via [connection]"


def test_scrub_handles_windows_paths():
    assert scrub_error_message("failed at C:\\app\\signal_scan\\main.py") == "failed at [file]"


def test_scrub_truncates():
    assert len(scrub_error_message("x" * 2000)) == MAX_ERROR_CHARS


def test_scrub_defaults():
    assert scrub_error_message(None) == "An error occurred"
    assert scrub_error_message(ValueError()) == "ValueError"


def test_sanitize_for_logging_redacts_pii_and_truncates():
    text = sanitize_for_logging("contact jane@example.com " + "y" * 600, max_length=50)
    assert "jane@example.com" not in text
    assert text.endswith("... [truncated]")


def test_scrub_stays_fast_on_long_unbroken_paths():
    started = time.monotonic()
    message = scrub_error_message("/a" * 50000)
    preview = sanitize_for_logging("/a" * 50000, max_length=200)
    assert time.monotonic() - started < 1
    assert len(message) == MAX_ERROR_CHARS
    assert preview.endswith("... [truncated]")


def test_scrub_still_finds_deep_paths():
    path = "/" + "/".join(f"d{i}" for i in range(20)) + "/settings.py"
    assert scrub_error_message(f"missing {path}") == "missing [file]"
