from attendance_kiosk.config import DEFAULT_LABELS, Settings


def test_defaults_follow_the_kiosk_contract():
    settings = Settings(_env_file=None)
    assert settings.match_threshold == 0.6
    assert settings.blink_threshold == 0.28
    assert settings.poll_interval_seconds == 1.0
    assert settings.known_labels == DEFAULT_LABELS


def test_label_list_is_parsed_from_comma_separated_text(monkeypatch):
    monkeypatch.setenv("KIOSK_KNOWN_LABELS_RAW", " andij, faiz ,,duta ")
    assert Settings(_env_file=None).known_labels == ("andij", "faiz", "duta")
