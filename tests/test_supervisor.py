"""
Tests for the llama-server supervisor.

The real process is replaced by FakeProcess or a fake Popen and readiness
polling is patched, so nothing is ever spawned.
"""

from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Any
import subprocess

import pytest

import llm.supervisor as supervisor_mod
from config.compute_config import ComputeConfig
from config.llm_models import model_file_path
from config.llama_config import LlamaServerDefaults
from llm.config_resolver import LlamaServerConfig, resolve_server_config
from llm.errors import ServerStartError
from llm.server_process import LlamaServerProcess, pick_free_port, wait_port_open
from llm.supervisor import BuiltinLlmSupervisor

from conftest import FakePlatform, write_gguf

CPU = ComputeConfig.from_strings("cpu")
_pids = count(4000)


@dataclass
class FakeProcess:
    cfg: LlamaServerConfig
    platform: Any = None
    alive: bool = False
    stopped: bool = False
    pid: int = field(default_factory=lambda: next(_pids))

    def start(self) -> None:
        self.alive = True

    def is_running(self) -> bool:
        return self.alive

    def has_exited(self) -> bool:
        return not self.alive

    def stop(self, wait_s: float = 5.0) -> None:
        self.alive = False
        self.stopped = True


class ProcessRecorder:
    def __init__(self):
        self.created: list[FakeProcess] = []

    def __call__(self, cfg, platform):
        proc = FakeProcess(cfg=cfg, platform=platform)
        self.created.append(proc)
        return proc


@pytest.fixture
def installed(llm_paths):
    """CPU runtime plus the two smallest catalog models on disk."""
    rt = llm_paths.llm_dir / "runtime" / "cpu"
    rt.mkdir(parents=True)
    (rt / "llama-server").write_bytes(b"")
    for model_id in ("qwen3_0_6b_q4_k_m", "qwen3_1_7b_q4_k_m"):
        write_gguf(model_file_path(llm_paths.models_dir, model_id))
    return llm_paths


@pytest.fixture
def ready(monkeypatch):
    state = {"ready": True}
    monkeypatch.setattr(supervisor_mod, "pick_free_port", lambda host: 18080)
    monkeypatch.setattr(supervisor_mod, "wait_port_open", lambda *args, **kwargs: state["ready"])
    return state


@pytest.fixture
def make_supervisor(installed, ready):
    def _make(platform=None):
        recorder = ProcessRecorder()
        sup = BuiltinLlmSupervisor(
            paths=installed,
            platform=platform or FakePlatform(),
            process_factory=recorder,
        )
        return sup, recorder

    return _make


class TestEnsureRunning:

    @pytest.mark.asyncio
    async def test_start_records_state(self, make_supervisor):
        sup, recorder = make_supervisor()
        status = await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")

        assert status.running and status.running_this_model
        assert status.base_url == "http://127.0.0.1:18080"
        assert sup.running_model_id() == "qwen3_0_6b_q4_k_m"
        assert sup.running_config() == CPU
        cmd = recorder.created[0].cfg.command()
        assert cmd[cmd.index("--port") + 1] == "18080"
        assert cmd[cmd.index("--n-gpu-layers") + 1] == "0"

    @pytest.mark.asyncio
    async def test_same_request_reuses_process(self, make_supervisor):
        sup, recorder = make_supervisor()
        await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")
        await sup.ensure_running(ComputeConfig.from_strings("cpu", None, None, 33), "qwen3_0_6b_q4_k_m")
        assert len(recorder.created) == 1

    @pytest.mark.asyncio
    async def test_different_model_restarts(self, make_supervisor):
        sup, recorder = make_supervisor()
        await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")
        status = await sup.ensure_running(CPU, "qwen3_1_7b_q4_k_m")

        first, second = recorder.created
        assert first.stopped
        assert second.alive
        assert status.running_model_id == "qwen3_1_7b_q4_k_m"

    @pytest.mark.asyncio
    async def test_crashed_process_is_not_reused(self, make_supervisor):
        sup, recorder = make_supervisor()
        await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")
        recorder.created[0].alive = False
        assert not sup.is_running()

        await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")
        assert len(recorder.created) == 2

    @pytest.mark.asyncio
    async def test_port_never_opening_is_a_start_error(self, make_supervisor, ready):
        ready["ready"] = False
        sup, recorder = make_supervisor()
        with pytest.raises(ServerStartError):
            await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")

        assert recorder.created[0].stopped
        assert not sup.is_running()
        assert sup.current_port() is None


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_clears_everything(self, make_supervisor):
        sup, recorder = make_supervisor()
        await sup.ensure_running(CPU, "qwen3_0_6b_q4_k_m")
        await sup.stop()

        assert recorder.created[0].stopped
        assert sup.current_port() is None
        assert sup.current_model_path() is None
        assert sup.running_config() is None
        status = sup.status("qwen3_0_6b_q4_k_m")
        assert not status.running and status.base_url is None

    def test_orphan_on_recorded_port_is_killed(self, make_supervisor):
        platform = FakePlatform(listening={5555: 4321})
        sup, _ = make_supervisor(platform)
        sup.adopt_orphan(5555)
        sup.shutdown()
        assert platform.killed == [4321]
        assert sup.current_port() is None

    def test_stop_without_anything_is_harmless(self, make_supervisor):
        platform = FakePlatform()
        sup, _ = make_supervisor(platform)
        sup.shutdown()
        assert platform.killed == []


class TestStatus:

    def test_status_before_start(self, make_supervisor):
        sup, _ = make_supervisor()
        status = sup.status("qwen3_0_6b_q4_k_m")
        assert status.runtime_installed
        assert status.model_installed
        assert not status.running
        assert status.running_model_id is None

    def test_status_of_missing_model(self, make_supervisor):
        sup, _ = make_supervisor()
        assert not sup.status("qwen3_32b_q4_k_m").model_installed

    def test_status_dict_is_camel_case(self, make_supervisor):
        sup, _ = make_supervisor()
        assert set(sup.status("x").to_dict()) == {
            "runtimeInstalled",
            "modelInstalled",
            "modelId",
            "runningModelId",
            "runningThisModel",
            "running",
            "baseUrl",
        }


class TestServerConfig:

    def test_command_line(self, tmp_path: Path):
        cfg = resolve_server_config(
            LlamaServerDefaults(),
            ComputeConfig.from_strings("hybrid", "vulkan", None, 12),
            server_bin=tmp_path / "llama-server",
            model_path=tmp_path / "m.gguf",
            runtime_dir=tmp_path,
            port=9000,
        )
        assert cfg.command() == [
            str(tmp_path / "llama-server"),
            "-m", str(tmp_path / "m.gguf"),
            "--host", "127.0.0.1",
            "--port", "9000",
            "--ctx-size", "4096",
            "--jinja",
            "--n-gpu-layers", "12",
        ]

    def test_unknown_override_is_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError, match="Unknown override"):
            resolve_server_config(
                LlamaServerDefaults(), ComputeConfig(),
                server_bin=tmp_path, model_path=tmp_path, runtime_dir=tmp_path, port=9000,
                server_overrides={"mmproj_path": tmp_path},
            )

    def test_bad_port_is_rejected(self, tmp_path: Path):
        with pytest.raises(ValueError, match="port"):
            resolve_server_config(
                LlamaServerDefaults(), ComputeConfig(),
                server_bin=tmp_path, model_path=tmp_path, runtime_dir=tmp_path, port=70000,
            )

    def test_tuning_overrides_apply(self, tmp_path: Path):
        cfg = resolve_server_config(
            LlamaServerDefaults(), CPU,
            server_bin=tmp_path, model_path=tmp_path, runtime_dir=tmp_path, port=9000,
            server_overrides={"n_ctx": 8192, "jinja": False},
        )
        cmd = cfg.command()
        assert cmd[cmd.index("--ctx-size") + 1] == "8192"
        assert "--jinja" not in cmd

    def test_paths_cannot_be_overridden(self, tmp_path: Path):
        with pytest.raises(ValueError, match="model_path"):
            resolve_server_config(
                LlamaServerDefaults(), CPU,
                server_bin=tmp_path, model_path=tmp_path, runtime_dir=tmp_path, port=9000,
                server_overrides={"model_path": tmp_path / "other.gguf"},
            )


class FakePopen:
    def __init__(self, cmd, **kwargs):
        self.cmd = cmd
        self.kwargs = kwargs
        self.pid = 777
        self.returncode = None

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        self.returncode = -9
        return self.returncode


class TestLlamaServerProcess:

    def _cfg(self, tmp_path: Path) -> LlamaServerConfig:
        server = tmp_path / "llama-server"
        server.write_bytes(b"")
        model = write_gguf(tmp_path / "m.gguf")
        return resolve_server_config(
            LlamaServerDefaults(), ComputeConfig(),
            server_bin=server, model_path=model, runtime_dir=tmp_path, port=9001,
        )

    def test_start_and_stop(self, tmp_path: Path):
        platform = FakePlatform()
        spawned = []

        def popen(cmd, **kwargs):
            spawned.append(FakePopen(cmd, **kwargs))
            return spawned[-1]

        proc = LlamaServerProcess(cfg=self._cfg(tmp_path), platform=platform, popen=popen)
        proc.start()
        assert proc.is_running() and proc.pid == 777
        assert spawned[0].kwargs["stdout"] is subprocess.DEVNULL

        proc.stop()
        assert platform.killed == [777]
        assert not proc.is_running()

    def test_missing_binary(self, tmp_path: Path):
        cfg = self._cfg(tmp_path)
        cfg.server_bin.unlink()
        with pytest.raises(FileNotFoundError, match="llama-server not found"):
            LlamaServerProcess(cfg=cfg, platform=FakePlatform()).start()

    def test_spawn_failure_is_start_error(self, tmp_path: Path):
        def popen(cmd, **kwargs):
            raise PermissionError("not executable")

        proc = LlamaServerProcess(cfg=self._cfg(tmp_path), platform=FakePlatform(), popen=popen)
        with pytest.raises(ServerStartError, match="not executable"):
            proc.start()

    def test_wait_port_open_gives_up_when_child_exits(self):
        port = pick_free_port()
        assert wait_port_open("127.0.0.1", port, timeout_s=5.0, interval_s=0.01, should_abort=lambda: True) is False
