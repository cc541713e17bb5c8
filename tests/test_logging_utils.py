from __future__ import annotations

import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from stackgate import logging_utils


def _settings(log_file: str | None, level: str = "INFO") -> SimpleNamespace:
    return SimpleNamespace(logging=SimpleNamespace(level=level, file=log_file))


@patch("stackgate.logging_utils.load_settings")
@patch("stackgate.logging_utils.logging.basicConfig")
def test_configure_logging_stream_only(
    mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
) -> None:
    mock_load_settings.return_value = _settings(None)

    logging_utils.configure_logging()

    kwargs = mock_basic_config.call_args.kwargs
    assert kwargs["force"] is True
    assert kwargs["level"] == logging.INFO
    assert len(kwargs["handlers"]) == 1


@patch("stackgate.logging_utils.load_settings")
@patch("stackgate.logging_utils.logging.basicConfig")
def test_configure_logging_override_and_file(
    mock_basic_config: MagicMock,
    mock_load_settings: MagicMock,
    tmp_path,
) -> None:
    mock_load_settings.return_value = _settings(str(tmp_path / "logs" / "stackgate.log"))

    logging_utils.configure_logging("debug")

    kwargs = mock_basic_config.call_args.kwargs
    assert kwargs["level"] == logging.DEBUG
    assert len(kwargs["handlers"]) == 2
    assert (tmp_path / "logs").is_dir()
    for handler in kwargs["handlers"]:
        handler.close()


@patch("stackgate.logging_utils.load_settings")
@patch("stackgate.logging_utils.logging.FileHandler", side_effect=OSError("permission denied"))
@patch("stackgate.logging_utils._logger")
def test_configure_logging_file_handler_error(
    mock_logger: MagicMock,
    _mock_file_handler: MagicMock,
    mock_load_settings: MagicMock,
    tmp_path,
) -> None:
    mock_load_settings.return_value = _settings(str(tmp_path / "app.log"))

    logging_utils.configure_logging()

    mock_logger.warning.assert_called_once()


def test_get_logger_auto_configures(monkeypatch) -> None:
    monkeypatch.setattr(logging_utils, "_logging_configured", False)
    calls = {"count": 0}

    def fake_configure(level_override=None) -> None:
        calls["count"] += 1
        logging_utils._logging_configured = True

    monkeypatch.setattr(logging_utils, "configure_logging", fake_configure)

    logger = logging_utils.get_logger("stackgate.test")
    logging_utils.get_logger("stackgate.test")

    assert logger.name == "stackgate.test"
    assert calls["count"] == 1
