"""
检查点日志测试。
"""
import pytest

from wikisync.core.checkpoint import CheckpointStore


@pytest.fixture
def checkpoints(tmp_path):
    return CheckpointStore(str(tmp_path), "run-1")


class TestCheckpointStore:
    """CheckpointStore 测试。"""

    @pytest.mark.asyncio
    async def test_append_and_load(self, checkpoints):
        """测试追加的记录可以按阶段读回。"""
        await checkpoints.append("b", {"id": "1", "opened": True})
        await checkpoints.append("b", {"id": "2", "opened": False})
        await checkpoints.append("c", {"id": "1"})

        assert await checkpoints.load_processed("b") == {"1", "2"}
        assert await checkpoints.load_processed("c") == {"1"}
        assert await checkpoints.load_processed("a") == set()

        records = await checkpoints.load_records("b")
        assert records[0]["opened"] is True

    @pytest.mark.asyncio
    async def test_record_requires_id(self, checkpoints):
        """测试缺少 id 的记录被拒绝。"""
        with pytest.raises(ValueError):
            await checkpoints.append("b", {"opened": True})

    def test_unknown_phase(self, checkpoints):
        """测试未知阶段名。"""
        with pytest.raises(ValueError):
            checkpoints.path_for("d")

    @pytest.mark.asyncio
    async def test_torn_tail_is_skipped_and_repaired(self, tmp_path, checkpoints):
        """测试崩溃留下的残行被跳过，新记录不会与残行粘连。"""
        await checkpoints.append("b", {"id": "1"})
        with open(checkpoints.path_for("b"), "a", encoding="utf-8") as f:
            f.write('{"id": "2", "ope')

        # 模拟进程重启
        restarted = CheckpointStore(str(tmp_path), "run-1")
        assert await restarted.load_processed("b") == {"1"}

        await restarted.append("b", {"id": "3"})
        assert await restarted.load_processed("b") == {"1", "3"}

    @pytest.mark.asyncio
    async def test_runs_are_isolated(self, tmp_path, checkpoints):
        """测试不同运行 ID 的检查点互不影响。"""
        await checkpoints.append("c", {"id": "7"})
        other = CheckpointStore(str(tmp_path), "run-2")
        assert await other.load_processed("c") == set()

    @pytest.mark.asyncio
    async def test_clear(self, checkpoints):
        """测试清空检查点。"""
        await checkpoints.append("a", {"id": "complete", "kind": "complete"})
        await checkpoints.clear()
        assert await checkpoints.load_records("a") == []
        assert checkpoints.run_dir.exists()
