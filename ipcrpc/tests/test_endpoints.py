import pytest
import requests

from ipcrpc.errors import EndpointNotFound
from ipcrpc.network import endpoints
from ipcrpc.network.endpoints import candidate_paths, probe_for_alternate_endpoint


def test_windows_candidates_are_named_pipes():
    paths = candidate_paths("discord-ipc", platform="win32")
    assert paths[0] == r"\\?\pipe\discord-ipc-0"
    assert paths[-1] == r"\\?\pipe\discord-ipc-9"
    assert len(paths) == 10


def test_posix_candidates_prefer_xdg_runtime_dir():
    env = {"XDG_RUNTIME_DIR": "/run/user/1000/", "TMPDIR": "/var/tmp"}
    paths = candidate_paths("discord-ipc", platform="linux", environ=env)
    assert paths == [f"/run/user/1000/discord-ipc-{index}" for index in range(10)]


@pytest.mark.parametrize(
    "env, prefix",
    [
        ({"TMPDIR": "/var/folders/x/T/"}, "/var/folders/x/T"),
        ({"TMP": "/scratch"}, "/scratch"),
        ({"TEMP": "/temp"}, "/temp"),
        ({}, "/tmp"),
        ({"XDG_RUNTIME_DIR": "", "TMP": "/scratch"}, "/scratch"),
    ],
)
def test_posix_candidate_prefix_fallbacks(env, prefix):
    paths = candidate_paths("app-ipc", platform="darwin", environ=env)
    assert paths[0] == f"{prefix}/app-ipc-0"


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


@pytest.mark.asyncio
async def test_probe_returns_first_port_answering_404(monkeypatch):
    seen = []

    def _fake_get(url, timeout):
        seen.append(url)
        if url.endswith(":6465"):
            return _Response(404)
        if url.endswith(":6464"):
            return _Response(200)
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(endpoints.requests, "get", _fake_get)

    url = await probe_for_alternate_endpoint(30)
    assert url == "http://127.0.0.1:6465"
    assert seen == ["http://127.0.0.1:6463", "http://127.0.0.1:6464", "http://127.0.0.1:6465"]


@pytest.mark.asyncio
async def test_probe_cycles_ports_and_gives_up(monkeypatch):
    seen = []

    def _fake_probe(url, timeout):
        seen.append(url)
        return False

    monkeypatch.setattr(endpoints, "_probe_once", _fake_probe)

    with pytest.raises(EndpointNotFound):
        await probe_for_alternate_endpoint(12, base_port=7000, host="localhost")
    assert len(seen) == 13
    assert seen[0] == "http://localhost:7000"
    assert seen[9] == "http://localhost:7009"
    assert seen[10] == "http://localhost:7000"
