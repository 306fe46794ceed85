"""CLI 类后端共用的子进程工具。

claude 与 gemini 都通过启动本地 CLI 进程接入，这里统一处理：
工作目录解析、进程启动与终止、stdout 增量读取、stderr 收集、版本探测。
"""

import asyncio
import codecs
import os
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

from gateway_core.domain.exceptions import ProviderUnavailableError
from gateway_core.domain.models import GenerationSettings


def resolve_working_directory(cwd: Optional[str], settings: GenerationSettings) -> str:
    """计算后端进程的工作目录。

    dev 模式使用请求给出的 cwd（默认为当前进程目录）；
    user 模式使用 agent_dir，未配置时使用用户主目录：
    - 绝对路径原样使用；
    - ``~/`` 开头相对用户主目录；
    - ``./`` 开头相对当前进程目录；
    - 其他相对路径视为相对用户主目录。
    """

    effective = str(Path(cwd).expanduser()) if cwd else os.getcwd()
    if settings.agent_mode != "user":
        return effective
    home = Path.home()
    agent_dir = settings.agent_dir
    if not agent_dir:
        return str(home)
    if agent_dir.startswith("/"):
        return agent_dir
    if agent_dir.startswith("~/"):
        return str(home / agent_dir[2:])
    if agent_dir.startswith("./"):
        return str(Path.cwd() / agent_dir[2:])
    return str(home / agent_dir)


async def spawn(
    program: str,
    args: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    backend: str = "",
) -> asyncio.subprocess.Process:
    """启动子进程；可执行文件缺失或工作目录无效时抛出 ProviderUnavailableError。"""

    try:
        return await asyncio.create_subprocess_exec(
            program,
            *args,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ProviderUnavailableError(
            code="CLI_NOT_FOUND", message=f"{program} not found: {e}", backend=backend
        )
    except OSError as e:
        raise ProviderUnavailableError(code="CLI_SPAWN_ERROR", message=str(e), backend=backend)


async def terminate(proc: asyncio.subprocess.Process, grace: float = 2.0) -> None:
    """终止仍在运行的子进程，超过宽限期后强制 kill。"""

    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def iter_lines(stream: asyncio.StreamReader, chunk_size: int = 65536) -> AsyncIterator[str]:
    """逐行读取并解码输出，不含行尾换行。

    按块读取后自行切分，单行长度不受 StreamReader 缓冲上限约束。
    """

    buffer = bytearray()
    while True:
        raw = await stream.read(chunk_size)
        if not raw:
            if buffer:
                yield buffer.decode("utf-8", errors="replace").rstrip("\r")
            return
        buffer += raw
        start = 0
        while True:
            end = buffer.find(b"\n", start)
            if end < 0:
                break
            yield buffer[start:end].decode("utf-8", errors="replace").rstrip("\r")
            start = end + 1
        del buffer[:start]


async def iter_text(stream: asyncio.StreamReader, chunk_size: int = 4096) -> AsyncIterator[str]:
    """按块读取输出并增量解码，多字节字符不会被截断。"""

    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        raw = await stream.read(chunk_size)
        if not raw:
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
            return
        text = decoder.decode(raw)
        if text:
            yield text


async def drain(stream: asyncio.StreamReader) -> str:
    """读尽 stderr，避免管道写满阻塞子进程。"""

    data = await stream.read()
    return data.decode("utf-8", errors="replace")


async def probe_version(program: str, timeout: float = 5.0) -> Tuple[bool, Optional[str]]:
    """运行 ``program --version`` 判断 CLI 是否可用。"""

    try:
        proc = await asyncio.create_subprocess_exec(
            program,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return False, f"{program} not found: {e}"
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await terminate(proc)
        return False, f"{program} --version timed out"
    if proc.returncode != 0:
        return False, stderr.decode("utf-8", errors="replace").strip() or f"exit code {proc.returncode}"
    return True, None
