import pytest

from gemini_image_mcp.config import Settings, resolve_api_key
from gemini_image_mcp.main import build_dispatcher, parse_args


def test_command_line_key_wins_over_environment() -> None:
    assert resolve_api_key("cli-key", "env-key") == "cli-key"
    assert resolve_api_key(None, "env-key") == "env-key"


def test_blank_keys_count_as_unset() -> None:
    assert resolve_api_key(None, "   ") is None
    assert resolve_api_key("", "env-key") is None


def test_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.gemini_api_key is None
    assert args.strict_lifecycle is None
    assert args.transport == "stdio"
    assert args.port == 8100


def test_parse_args_overrides() -> None:
    args = parse_args(["--gemini-api-key", "abc", "--strict-lifecycle", "--transport", "http", "--port", "9000"])
    assert args.gemini_api_key == "abc"
    assert args.strict_lifecycle is True
    assert args.transport == "http"
    assert args.port == 9000


def test_version_flag_exits(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        parse_args(["--version"])
    assert excinfo.value.code == 0
    assert "1.1.0" in capsys.readouterr().out


@pytest.mark.parametrize(
    ("configured", "override", "expected"),
    [(False, None, False), (True, None, True), (False, True, True), (True, False, False)],
)
def test_build_dispatcher_strictness(configured, override, expected) -> None:
    config = Settings(strict_lifecycle=configured)
    dispatcher = build_dispatcher(config, "key", strict_lifecycle=override)
    assert dispatcher.strict_lifecycle is expected
    assert dispatcher.runner.client.configured is True


def test_build_dispatcher_applies_limits() -> None:
    config = Settings(max_image_bytes=1024, max_prompt_chars=50, retry_max_attempts=5, gemini_image_model="img-model")
    dispatcher = build_dispatcher(config, None)
    runner = dispatcher.runner
    assert runner.acquirer.max_bytes == 1024
    assert runner.validator.max_prompt_chars == 50
    assert runner.client.retry_policy.max_attempts == 5
    assert runner.client.image_model == "img-model"
    assert runner.client.configured is False
