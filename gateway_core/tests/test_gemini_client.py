import json
import sys
import textwrap

import pytest

from gateway_core.domain.exceptions import ProviderStreamInterruptedError, ProviderUnavailableError
from gateway_core.domain.models import ChatMessage, ModelContext
from gateway_core.gateway.normalizer import normalize_settings
from gateway_core.providers.gemini_client import GeminiClient, build_gemini_args, build_gemini_prompt


class SettingsStub:
    gemini_timeout = 5.0
    gemini_bin = "gemini-test"


def test_prompt_contains_system_block_and_transcript():
    ctx = ModelContext(
        system_prompt="You are Gemini",
        messages=[
            ChatMessage(role="user", content="q1"),
            ChatMessage(role="assistant", content="a1"),
            ChatMessage(role="user", content="q2"),
        ],
    )
    prompt = build_gemini_prompt(ctx.to_messages())
    assert prompt == "<system>\nYou are Gemini\n</system>\n\n\nUser: q1\n\nAssistant: a1\n\nUser: q2"


def test_args_from_options():
    s = normalize_settings(
        {
            "model": "gemini-2.5-pro",
            "gemini": {"temperature": 0.2, "maxOutputTokens": 512, "harmBlockThreshold": "BLOCK_NONE"},
        }
    )
    assert build_gemini_args(s) == [
        "--model",
        "gemini-2.5-pro",
        "--temperature",
        "0.2",
        "--max-output-tokens",
        "512",
        "--harm-block-threshold",
        "BLOCK_NONE",
    ]
    assert build_gemini_args(normalize_settings({})) == []


def test_command_ends_with_prompt_flag():
    client = GeminiClient(SettingsStub())
    cmd = client.build_command([ChatMessage(role="user", content="hi")], normalize_settings({}))
    assert cmd == ["-p", "User: hi"]
    with pytest.raises(ProviderUnavailableError):
        client.build_command([], normalize_settings({}))


def fake_cli(tmp_path, body):
    script = tmp_path / "gemini"
    script.write_text(f"#!{sys.executable}\nimport json, sys\n" + textwrap.dedent(body), encoding="utf-8")
    script.chmod(0o755)

    class Cfg(SettingsStub):
        gemini_bin = str(script)

    return GeminiClient(Cfg())


@pytest.mark.asyncio
async def test_stream_forwards_stdout_text(tmp_path):
    client = fake_cli(
        tmp_path,
        """
        with open(sys.argv[0] + ".args", "w") as fh:
            json.dump(sys.argv[1:], fh)
        sys.stdout.buffer.write("Hello ".encode("utf-8"))
        sys.stdout.buffer.flush()
        sys.stdout.buffer.write("wörld".encode("utf-8"))
        """,
    )
    handle = await client.stream([ChatMessage(role="user", content="hi")], normalize_settings({}), str(tmp_path))
    assert "".join([f async for f in handle]) == "Hello wörld"
    assert handle.session_id() is None
    argv = json.loads((tmp_path / "gemini.args").read_text(encoding="utf-8"))
    assert argv[-2:] == ["-p", "User: hi"]


@pytest.mark.asyncio
async def test_stream_raises_on_nonzero_exit(tmp_path):
    client = fake_cli(
        tmp_path,
        """
        sys.stdout.write("partial")
        sys.stderr.write("quota exceeded")
        sys.exit(1)
        """,
    )
    handle = await client.stream([ChatMessage(role="user", content="hi")], normalize_settings({}), str(tmp_path))
    received = []
    with pytest.raises(ProviderStreamInterruptedError) as exc:
        async for text in handle:
            received.append(text)
    assert "".join(received) == "partial"
    assert exc.value.code == "GEMINI_EXIT"
    assert "quota exceeded" in exc.value.message
