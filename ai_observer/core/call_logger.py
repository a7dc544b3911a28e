"""回合日志：按会话记录每个 Agent 回合的结果摘要。

每个会话的日志存在 data/logs/session_{session_id}.jsonl 文件中，
每行一条 JSON 记录（JSONL 格式），便于追加和逐行读取。
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TurnDecision = Literal["speak", "pass", "aborted", "timeout", "error"]


class TurnLog(BaseModel):
    """单个回合的完整记录。"""
    turn_id: str = ""
    session_id: str = ""
    agent_id: str = ""
    agent_name: str = ""
    model_id: str = ""
    decision: TurnDecision = "pass"
    raw_output: str = ""         # 完整原始输出，含协议标记
    content: str = ""            # 清理后的展示文本
    admin_action: str | None = None
    search_query: str | None = None
    duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    error: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class CallLogger:
    """按会话写入/读取回合日志（JSONL 格式）。"""

    def __init__(self, log_dir: str = "data/logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def _session_file(self, session_id: str) -> Path:
        return self.log_dir / f"session_{session_id}.jsonl"

    def save(self, log: TurnLog) -> None:
        """追加一条日志到该会话文件。"""
        path = self._session_file(log.session_id)
        with open(path, "a", encoding="utf-8") as f:
            f.write(log.model_dump_json() + "\n")
        logger.debug(
            "CallLogger: saved log for agent=%s turn=%s decision=%s duration=%dms",
            log.agent_id, log.turn_id, log.decision, log.duration_ms,
        )

    def get_session_logs(self, session_id: str) -> list[TurnLog]:
        """读取该会话全部日志，按时间倒序返回；损坏的行跳过。"""
        path = self._session_file(session_id)
        if not path.exists():
            return []
        logs: list[TurnLog] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    logs.append(TurnLog.model_validate_json(line))
                except ValueError:
                    logger.warning("CallLogger: skipping unreadable line in %s", path.name)
        return list(reversed(logs))
