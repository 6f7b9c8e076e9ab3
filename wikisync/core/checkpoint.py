"""
检查点日志模块。
以 JSONL 追加写的方式记录每个阶段已完成的工作项，进程崩溃后可据此续跑。
"""
import json
import os
import shutil
from pathlib import Path
from typing import Any, Optional

from wikisync.core.config import get_settings
from wikisync.core.logging import get_logger

logger = get_logger(__name__)

PHASES = ("a", "b", "c")


class CheckpointStore:
    """
    按运行 ID 划分的检查点存储。

    文件布局: {base_dir}/{run_id}/phase_{a|b|c}.jsonl，每行一个 JSON 对象，
    对象必须带有 "id" 字段。每次追加都会 flush + fsync，
    崩溃时最多丢失最后一行，读取时跳过不完整的行。
    """

    def __init__(self, base_dir: str, run_id: str):
        self.base_dir = Path(base_dir)
        self.run_id = run_id
        self.run_dir = self.base_dir / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._repaired: set[str] = set()

    @classmethod
    def from_settings(cls, run_id: str, base_dir: Optional[str] = None) -> "CheckpointStore":
        return cls(base_dir or get_settings().checkpoint.dir, run_id)

    def path_for(self, phase: str) -> Path:
        if phase not in PHASES:
            raise ValueError(f"未知阶段: {phase}")
        return self.run_dir / f"phase_{phase}.jsonl"

    async def append(self, phase: str, record: dict[str, Any]) -> None:
        """追加一条记录并落盘。"""
        if "id" not in record:
            raise ValueError("检查点记录缺少 id 字段")
        path = self.path_for(phase)
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"

        with open(path, "ab") as f:
            if phase not in self._repaired:
                # 上次崩溃可能留下没有换行的残行，先补换行避免与新行粘连
                if f.tell() > 0 and not self._ends_with_newline(path):
                    f.write(b"\n")
                self._repaired.add(phase)
            f.write(line.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _ends_with_newline(path: Path) -> bool:
        with open(path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"

    async def load_records(self, phase: str) -> list[dict[str, Any]]:
        """读取某阶段的全部有效记录，跳过损坏的行。"""
        path = self.path_for(phase)
        if not path.exists():
            return []

        records = []
        skipped = 0
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    skipped += 1
                    continue
                if isinstance(record, dict) and "id" in record:
                    records.append(record)
                else:
                    skipped += 1

        if skipped:
            logger.warning(f"检查点 {path.name} 跳过 {skipped} 行无效记录")
        return records

    async def load_processed(self, phase: str) -> set[str]:
        """返回某阶段已处理的 ID 集合。"""
        return {str(record["id"]) for record in await self.load_records(phase)}

    async def clear(self) -> None:
        """删除本次运行的全部检查点。"""
        if self.run_dir.exists():
            shutil.rmtree(self.run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._repaired.clear()
        logger.info(f"已清空检查点: {self.run_dir}")
