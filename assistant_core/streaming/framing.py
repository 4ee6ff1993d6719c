"""SSE 风格的增量分帧。

网络每次读到的分块（bytes）先增量解码为文本，再按换行切分为物理行：

- 空行与以冒号开头的注释行（keep-alive）忽略；
- `data: [DONE]` 为终止标记；
- 其他 `data:` 行的负载按 JSON 解析。

一个逻辑帧可能跨多个物理行到达（例如 JSON 字符串里带了原始换行），
所以 JSON 解析失败的帧不会被丢弃：它留在缓冲区最前面，等下一行到达后连同换行一起重新解析。
如果下一行本身就是新帧的开头（data: / 注释 / 空行），说明被保留的片段确实是坏帧，
此时产出一个 malformed 帧并继续。
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Union

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

FrameKind = Literal["data", "done", "malformed"]


@dataclass
class Frame:
    kind: FrameKind
    raw: str
    data: Any = None


class LineBuffer:
    """增量解码网络分块，并提供按物理行的窥视与丢弃。

    不完整的尾部（无论多短）始终保留在缓冲区里，等待下一个分块。
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Union[bytes, str]) -> None:
        if isinstance(chunk, (bytes, bytearray)):
            self._buffer += self._decoder.decode(bytes(chunk))
        else:
            self._buffer += chunk

    def peek(self, count: int) -> Optional[List[str]]:
        """返回缓冲区前 count 个完整行（去掉行尾 \\r），不足时返回 None。"""

        lines: List[str] = []
        start = 0
        for _ in range(count):
            idx = self._buffer.find("\n", start)
            if idx == -1:
                return None
            line = self._buffer[start:idx]
            if line.endswith("\r"):
                line = line[:-1]
            lines.append(line)
            start = idx + 1
        return lines

    def drop(self, count: int) -> None:
        start = 0
        for _ in range(count):
            idx = self._buffer.find("\n", start)
            if idx == -1:
                start = len(self._buffer)
                break
            start = idx + 1
        self._buffer = self._buffer[start:]

    def flush(self) -> None:
        """传输结束：冲刷解码器，并为没有换行结尾的残余补上行终止符。"""

        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer and not self._buffer.endswith("\n"):
            self._buffer += "\n"


def _starts_frame(line: str) -> bool:
    return not line.strip() or line.startswith(":") or line.startswith(DATA_PREFIX)


class SSEFrameReader:
    """把分块流转换为逻辑帧。feed() 每次返回本次新产生的完整帧。"""

    def __init__(self, encoding: str = "utf-8"):
        self._lines = LineBuffer(encoding)
        # 当前逻辑帧占用的物理行数，>1 表示前面的片段解析失败、正在等待拼接
        self._held = 1

    def feed(self, chunk: Union[bytes, str]) -> List[Frame]:
        self._lines.feed(chunk)
        return self._drain()

    def finish(self) -> List[Frame]:
        self._lines.flush()
        frames = self._drain()
        if self._held > 1:
            lines = self._lines.peek(self._held - 1) or []
            frames.append(Frame(kind="malformed", raw="\n".join(lines)))
            self._lines.drop(self._held - 1)
            self._held = 1
        return frames

    def _drain(self) -> List[Frame]:
        frames: List[Frame] = []
        while True:
            lines = self._lines.peek(self._held)
            if lines is None:
                return frames
            if self._held > 1 and _starts_frame(lines[-1]):
                frames.append(Frame(kind="malformed", raw="\n".join(lines[:-1])))
                self._lines.drop(self._held - 1)
                self._held = 1
                continue
            first = lines[0]
            if self._held == 1 and (not first.strip() or first.startswith(":") or not first.startswith(DATA_PREFIX)):
                self._lines.drop(1)
                continue
            payload = "\n".join(lines)[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                self._lines.drop(self._held)
                self._held = 1
                frames.append(Frame(kind="done", raw=payload))
                continue
            try:
                # strict=False：允许字符串内出现原始换行等控制字符
                data = json.loads(payload, strict=False)
            except json.JSONDecodeError:
                self._held += 1
                continue
            self._lines.drop(self._held)
            self._held = 1
            frames.append(Frame(kind="data", raw=payload, data=data))
