import tomllib
from pathlib import Path

import pytest

from loopwright import __version__
from loopwright.config import LoopwrightConfig, dumps_toml, load_config, save_config
from loopwright.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "loopwright.toml"
    config = LoopwrightConfig.default()
    config.loop.max_iterations = 7
    config.loop.max_concurrency = 3
    config.loop.idle_timeout_seconds = 90.5
    config.loop.auto_commit = False
    config.backend.platform = "opencode"
    config.backend.allowed_tools = ["Bash", "Read"]
    config.backend.model = "anthropic/claude-sonnet"
    config.validation.eval_command = "clj-nrepl-eval -p {target} {expression}"
    config.validation.eval_target = "7888"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.loop.max_iterations == 7
    assert loaded.loop.max_concurrency == 3
    assert loaded.loop.idle_timeout_seconds == 90.5
    assert loaded.loop.auto_commit is False
    assert loaded.backend.platform == "opencode"
    assert loaded.backend.allowed_tools == ["Bash", "Read"]
    assert loaded.backend.model == "anthropic/claude-sonnet"
    assert loaded.validation.eval_command == "clj-nrepl-eval -p {target} {expression}"
    assert loaded.validation.eval_target == "7888"
    assert loaded.loop.log_dir == ".loopwright/logs"


def test_missing_config_file_uses_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.loop.max_iterations == 20
    assert config.loop.max_concurrency == 1
    assert config.backend.platform == "claude"
    assert config.validation.agent_checks is True


def test_partial_config_and_int_to_float(tmp_path: Path) -> None:
    config_path = tmp_path / "loopwright.toml"
    config_path.write_text("[loop]\niteration_timeout_seconds = 60\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.loop.iteration_timeout_seconds == 60.0
    assert isinstance(config.loop.iteration_timeout_seconds, float)
    assert config.loop.max_iterations == 20


@pytest.mark.parametrize(
    "content, message",
    [
        ("[loop\n", "Invalid TOML"),
        ("[telemetry]\nenabled = true\n", "Unknown config section"),
        ("[loop]\nmax_iteration = 3\n", "Unknown key"),
        ("[loop]\nmax_iterations = \"3\"\n", "must be an integer"),
        ("[loop]\nmax_iterations = 0\n", "max_iterations must be >= 1"),
        ("[backend]\nplatform = \"codex\"\n", "backend.platform"),
        ("[backend]\nallowed_tools = \"Bash\"\n", "list of strings"),
        ("[validation]\nagent_checks = 1\n", "must be a boolean"),
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, content: str, message: str) -> None:
    config_path = tmp_path / "loopwright.toml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(LoopwrightConfig.default())

    assert "[loop]" in rendered
    assert "[backend]" in rendered
    assert "[validation]" in rendered
    assert "idle_timeout_seconds = 600.0" in rendered
    assert "allowed_tools = []" in rendered
    assert tomllib.loads(rendered)["loop"]["auto_commit"] is True


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
