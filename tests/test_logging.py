from pathlib import Path

import pytest
from loguru import logger

from kuberoll.kube.nodes import NodeLifecycle
from kuberoll.logging import LogConfig, setup_logging, teardown_logging

from tests.fakes import FakeKube

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("logging")]


class TestSetupLogging:
    @pytest.mark.asyncio
    async def test_file_receives_bound_context(self, tmp_path: Path):
        log_file = tmp_path / "kuberoll.log"
        ids = setup_logging(LogConfig(console=False, file=str(log_file)))
        try:
            await NodeLifecycle(FakeKube()).cordon(["node-a"])  # type: ignore[arg-type]
        finally:
            teardown_logging(ids)

        text = log_file.read_text()
        assert "nodes node=node-a" in text
        assert "Cordoned node node-a" in text

    def test_console_only_adds_one_handler(self):
        ids = setup_logging(LogConfig())
        try:
            assert len(ids) == 1
        finally:
            teardown_logging(ids)

    @pytest.mark.asyncio
    async def test_silent_after_teardown(self, tmp_path: Path):
        log_file = tmp_path / "kuberoll.log"
        teardown_logging(setup_logging(LogConfig(console=False)))

        hid = logger.add(log_file)
        try:
            await NodeLifecycle(FakeKube()).cordon(["node-a"])  # type: ignore[arg-type]
        finally:
            logger.remove(hid)

        assert "Cordoned" not in log_file.read_text()
