from rich.console import Console

from src.recap_capture.notify import FAILURE_MESSAGE, ConsoleNotifier


def test_console_notifier_prints_escaped_messages() -> None:
    console = Console(record=True, width=120)
    notifier = ConsoleNotifier(console)

    notifier.success("Saved captures/[gold].png")
    notifier.failure(FAILURE_MESSAGE)

    text = console.export_text()
    assert "✓ Saved captures/[gold].png" in text
    assert f"✗ {FAILURE_MESSAGE}" in text
