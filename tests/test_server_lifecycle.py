import asyncio
import socket
import sys
from pathlib import Path

import httpx
import pytest
import yaml
from fastapi import FastAPI

from agentkoppler.config import GatewayConfig, load_config, save_config
from agentkoppler.context import AppContext
from agentkoppler.server import GatewayServer, GatewayState, bind_socket
from fakes import FakeModel, FakeProvider, FakeProviderRegistry

MOCK_SERVER = Path(__file__).resolve().parents[1] / "examples" / "mock_mcp_server.py"


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _cfg(port: int, **overrides) -> GatewayConfig:
    data = {
        "device_id": "dev-1",
        "host": "127.0.0.1",
        "port": port,
        "restart_delay_seconds": 0.05,
        "shutdown_timeout_seconds": 1.0,
        "model_providers": [{"id": "local", "kind": "lmstudio"}],
        "tool_providers": [
            {"id": "mock", "transport": "stdio", "command": sys.executable, "args": [str(MOCK_SERVER)]}
        ],
        "agents": [
            {
                "id": "a" * 32,
                "name": "calc",
                "model_provider": "local",
                "model": "demo-model",
                "tool_providers": [{"provider_id": "mock", "capabilities": ["add"]}],
            }
        ],
    }
    data.update(overrides)
    return GatewayConfig.model_validate(data)


def _context(cfg: GatewayConfig, model: FakeModel) -> AppContext:
    context = AppContext(cfg)
    context.model_providers = FakeProviderRegistry({"local": FakeProvider({"demo-model": model})})
    return context


def test_port_in_use_leaves_gateway_stopped_with_error() -> None:
    async def scenario():
        blocker = bind_socket("127.0.0.1", 0)
        port = blocker.getsockname()[1]
        server = GatewayServer(object())
        try:
            listening = await server.start("127.0.0.1", port)
        finally:
            blocker.close()
        return listening, server, port

    listening, server, port = asyncio.run(scenario())

    assert listening is False
    assert server.state == GatewayState.STOPPED
    assert server.last_error.startswith(f"Cannot listen on 127.0.0.1:{port}")


def test_gateway_serves_tool_loop_end_to_end() -> None:
    port = _free_port()
    model = FakeModel([{"content": "adding", "tool_calls": [("add", {"a": 2, "b": 3})]}, {"content": "It is 5."}])
    context = _context(_cfg(port), model)

    async def scenario():
        assert await context.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
                models = (await client.get("/v1/models")).json()
                health = (await client.get("/healthz")).json()
                completion = (
                    await client.post(
                        "/v1/chat/completions",
                        json={"model": "calc", "messages": [{"role": "user", "content": "add 2 and 3"}]},
                    )
                ).json()
        finally:
            await context.stop()
        return models, health, completion

    models, health, completion = asyncio.run(scenario())

    assert [m["id"] for m in models["data"]] == ["calc"]
    assert health["state"] == "listening"
    assert health["tool_providers"][0]["state"] == "connected"
    assert completion["choices"][0]["message"]["content"] == "It is 5."
    tool_message = model.calls[1]["messages"][-1]
    assert tool_message == {"role": "tool", "tool_call_id": "call_0_add", "content": "5.0", "name": "add"}
    assert context.server.state == GatewayState.STOPPED


def test_port_change_rebinds_and_frees_old_port() -> None:
    old_port, new_port = _free_port(), _free_port()
    context = _context(_cfg(old_port, tool_providers=[], agents=[]), FakeModel())

    async def scenario():
        assert await context.start()
        await context.apply_config(_cfg(new_port, tool_providers=[], agents=[]))
        try:
            async with httpx.AsyncClient() as client:
                reply = await client.get(f"http://127.0.0.1:{new_port}/v1/models")
                try:
                    await client.get(f"http://127.0.0.1:{old_port}/v1/models")
                    old_refused = False
                except httpx.ConnectError:
                    old_refused = True
        finally:
            await context.stop()
        return reply.status_code, old_refused

    status, old_refused = asyncio.run(scenario())

    assert status == 200
    assert old_refused
    assert context.server.port == new_port


def test_settings_file_reload_adds_agent(tmp_path: Path) -> None:
    port = _free_port()
    path = tmp_path / "config.yaml"
    cfg = _cfg(port, tool_providers=[], agents=[])
    save_config(cfg, path)
    context = _context(cfg, FakeModel())

    async def scenario():
        assert await context.start()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            data["agents"] = [{"name": "writer", "model_provider": "local", "model": "demo-model"}]
            data.pop("device_id")
            path.write_text(yaml.safe_dump(data), encoding="utf-8")
            await context.reload_from_file(path)
            async with httpx.AsyncClient() as client:
                return (await client.get(f"http://127.0.0.1:{port}/v1/models")).json()
        finally:
            await context.stop()

    models = asyncio.run(scenario())

    assert [m["id"] for m in models["data"]] == ["writer"]
    assert context.cfg.device_id == "dev-1"


def test_restart_reuses_address() -> None:
    async def scenario():
        server = GatewayServer(FastAPI(), restart_delay_seconds=0.01, shutdown_timeout_seconds=0.5)
        assert await server.start("127.0.0.1", 0)
        first_port = server.port
        restarted = await server.restart()
        second_port = server.port
        await server.stop()
        return restarted, first_port, second_port, server.state

    restarted, first_port, second_port, state = asyncio.run(scenario())

    assert restarted
    assert first_port == second_port
    assert state == GatewayState.STOPPED


def test_reloading_agent_field_edits_keeps_socket_open(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    port = _free_port()
    path = tmp_path / "config.yaml"
    data = {
        "device_id": "dev-1",
        "host": "127.0.0.1",
        "port": port,
        "model_providers": [{"id": "local", "kind": "lmstudio"}],
        "agents": [{"name": "writer", "model_provider": "local", "model": "demo-model", "instructions": "Be brief."}],
    }
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    context = _context(load_config(str(path)), FakeModel())
    restarts: list[bool] = []
    reopen = context._restart

    async def counting_restart() -> bool:
        restarts.append(True)
        return await reopen()

    monkeypatch.setattr(context, "_restart", counting_restart)

    async def scenario():
        assert await context.start()
        try:
            await context.reload_from_file(path)
            data["agents"][0]["instructions"] = "Be thorough."
            path.write_text(yaml.safe_dump(data), encoding="utf-8")
            await context.reload_from_file(path)
            instructions = context.agents["writer"].instructions
            async with httpx.AsyncClient() as client:
                status = (await client.get(f"http://127.0.0.1:{port}/v1/models")).status_code
        finally:
            await context.stop()
        return instructions, status

    instructions, status = asyncio.run(scenario())

    assert restarts == []
    assert instructions == "Be thorough."
    assert status == 200


def test_client_disconnect_mid_stream_closes_the_model_stream() -> None:
    port = _free_port()
    words = " ".join(f"w{i}" for i in range(100))
    model = FakeModel([{"content": words, "delay": 0.05}])
    cfg = _cfg(
        port,
        tool_providers=[],
        agents=[{"name": "writer", "model_provider": "local", "model": "demo-model"}],
        stream_keepalive_seconds=0.1,
    )
    context = _context(cfg, model)
    request = {"model": "writer", "stream": True, "messages": [{"role": "user", "content": "go"}]}

    async def scenario():
        assert await context.start()
        try:
            async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}", timeout=5.0) as client:
                async with client.stream("POST", "/v1/chat/completions", json=request) as response:
                    async for line in response.aiter_lines():
                        if '"content"' in line:
                            break
            await asyncio.sleep(0.6)
            settled = model.content_chunks
            closed = model.closed_streams
            await asyncio.sleep(0.6)
            return settled, model.content_chunks, closed
        finally:
            await context.stop()

    settled, later, closed = asyncio.run(scenario())

    assert closed == 1
    assert later == settled
    assert later < 100


def test_restart_waits_for_running_reconfiguration() -> None:
    context = _context(_cfg(_free_port(), tool_providers=[], agents=[], control_device_id="other"), FakeModel())

    async def scenario():
        await context._reconfigure_lock.acquire()
        restart = asyncio.create_task(context.restart())
        await asyncio.sleep(0.1)
        blocked = not restart.done()
        context._reconfigure_lock.release()
        return blocked, await restart

    blocked, listening = asyncio.run(scenario())

    assert blocked
    assert listening is False
