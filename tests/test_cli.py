from __future__ import annotations

from pathlib import Path

import pytest

from kuberoll import cli
from kuberoll.config import Settings
from kuberoll.errors import GroupNotFoundError

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("logging")]


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("kuberoll.config.GLOBAL_CONFIG_PATH", tmp_path / "defaults.toml")


class TestParser:
    def test_rollout_flags(self):
        args = cli.build_parser().parse_args([
            "rollout", "--region", "us-west-2", "--group", "workers",
            "--drain-timeout", "600", "--delete-local-data", "--max-retries", "12",
            "--sleep-between-retries", "5", "--ignore-recovery-file",
        ])
        overrides = cli._overrides(args)

        assert args.group == "workers"
        assert args.ignore_recovery_file is True
        assert overrides["rollout"] == {
            "region": "us-west-2",
            "drain_timeout": 600.0,
            "delete_local_data": True,
            "max_retries": 12,
            "sleep_between_retries": 5.0,
            "state_file": None,
        }

    def test_unset_flags_are_none(self):
        args = cli.build_parser().parse_args(["rollout", "--group", "workers"])
        overrides = cli._overrides(args)
        assert overrides["rollout"]["delete_local_data"] is None
        assert overrides["logging"] == {"level": None}

    def test_drain_accepts_several_groups(self):
        args = cli.build_parser().parse_args(["drain", "--group", "a", "--group", "b"])
        assert args.groups == ["a", "b"]
        assert cli._overrides(args)["rollout"]["max_retries"] is None

    def test_rollout_requires_group(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["rollout"])


class TestMain:
    def test_success(self, monkeypatch: pytest.MonkeyPatch):
        seen: dict = {}

        async def fake_rollout(settings: Settings, group_name: str, ignore: bool) -> None:
            seen.update(settings=settings, group=group_name, ignore=ignore)

        monkeypatch.setattr(cli, "_rollout", fake_rollout)

        code = cli.main(["rollout", "--group", "workers", "--region", "eu-west-1", "--log-level", "ERROR"])

        assert code == 0
        assert seen["group"] == "workers"
        assert seen["ignore"] is False
        assert seen["settings"].rollout.region == "eu-west-1"

    def test_rollout_error_exits_non_zero(self, monkeypatch: pytest.MonkeyPatch):
        async def failing(settings: Settings, group_name: str, ignore: bool) -> None:
            raise GroupNotFoundError(group_name)

        monkeypatch.setattr(cli, "_rollout", failing)

        assert cli.main(["rollout", "--group", "missing", "--log-level", "ERROR"]) == 1

    def test_config_error_exits_non_zero(self):
        assert cli.main(["rollout", "--group", "workers", "--sleep-between-retries", "0"]) == 1

    def test_drain(self, monkeypatch: pytest.MonkeyPatch):
        seen: list = []

        async def fake_drain(settings: Settings, group_names: list[str]) -> None:
            seen.extend(group_names)

        monkeypatch.setattr(cli, "_drain", fake_drain)

        assert cli.main(["drain", "--group", "a", "--group", "b", "--log-level", "ERROR"]) == 0
        assert seen == ["a", "b"]
