"""
仓储测试。每个用例分别在内存实现和 SQLite 实现上运行。
"""
from datetime import timedelta

import pytest

from wikisync.core.errors import IntegrityViolation
from wikisync.models.dirty import DirtyReason, SyncPhase
from wikisync.store.records import (
    AttributionRecord,
    DeepContent,
    StagingRecord,
    VersionRecord,
    VoteRecord,
)

from conftest import BASE_TIME, make_revisions, make_votes


async def page_with_version(store, upstream_id=1, url="http://site/a", source=None, at=BASE_TIME):
    page = await store.pages.create(upstream_id, url)
    version = await store.versions.open_version(
        VersionRecord(page_id=page.id, upstream_id=upstream_id, title="A", rating=10, tags=["x"], source=source),
        at,
    )
    return page, version


class TestPageRepository:
    """页面身份测试。"""

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, any_store):
        page = await any_store.pages.create(42, "http://site/scp-001")

        assert (await any_store.pages.get(page.id)).upstream_id == 42
        assert (await any_store.pages.get_by_upstream_id(42)).id == page.id
        assert (await any_store.pages.get_by_url("http://site/scp-001")).id == page.id
        assert await any_store.pages.get_by_upstream_id(43) is None

    @pytest.mark.asyncio
    async def test_upstream_id_unique(self, any_store):
        """测试同一上游 ID 只能对应一个页面。"""
        await any_store.pages.create(42, "http://site/a")
        with pytest.raises(IntegrityViolation):
            await any_store.pages.create(42, "http://site/b")

    @pytest.mark.asyncio
    async def test_update_url(self, any_store):
        page = await any_store.pages.create(1, "http://site/old")
        await any_store.pages.update_url(page.id, "http://site/new")
        assert (await any_store.pages.get(page.id)).url == "http://site/new"


class TestVersionRepository:
    """版本区间测试。"""

    @pytest.mark.asyncio
    async def test_open_version_closes_previous(self, any_store):
        """测试新版本开启时旧版本关闭，区间首尾相接。"""
        page, first = await page_with_version(any_store)
        later = BASE_TIME + timedelta(hours=1)
        second = await any_store.versions.open_version(first.successor(rating=20), later)

        history = await any_store.versions.history(page.id)
        assert [v.rating for v in history] == [10, 20]
        assert history[0].valid_to == history[1].valid_from == later
        assert history[1].is_current
        assert (await any_store.versions.current(page.id)).id == second.id
        assert history[1].tags == ["x"]

    @pytest.mark.asyncio
    async def test_interval_never_inverted(self, any_store):
        """测试时间早于当前版本开始时间时不会产生倒置区间。"""
        page, first = await page_with_version(any_store)
        await any_store.versions.open_version(first.successor(rating=30), BASE_TIME - timedelta(days=1))

        history = await any_store.versions.history(page.id)
        assert all(v.valid_to is None or v.valid_to >= v.valid_from for v in history)
        assert len([v for v in history if v.is_current]) == 1

    @pytest.mark.asyncio
    async def test_current_sources_skip_deleted(self, any_store):
        """测试引用图输入只包含未删除且有正文的当前版本。"""
        live, _ = await page_with_version(any_store, 1, "http://site/a", source="[[[b]]]")
        gone, version = await page_with_version(any_store, 2, "http://site/b", source="x")
        await any_store.versions.open_version(version.successor(is_deleted=True), BASE_TIME + timedelta(hours=1))
        await page_with_version(any_store, 3, "http://site/c", source=None)

        assert await any_store.versions.current_sources() == {live.id: "[[[b]]]"}
        assert await any_store.versions.current_sources([gone.id]) == {}

    @pytest.mark.asyncio
    async def test_list_current(self, any_store):
        await page_with_version(any_store, 1, "http://site/a")
        await page_with_version(any_store, 2, "http://site/b")
        assert {v.upstream_id for v in await any_store.versions.list_current()} == {1, 2}


class TestStagingRepository:
    """暂存表测试。"""

    @pytest.mark.asyncio
    async def test_upsert_replaces_by_url(self, any_store):
        await any_store.staging.upsert_many([StagingRecord(url="http://site/a", upstream_id=1, rating=1)])
        await any_store.staging.upsert_many([StagingRecord(url="http://site/a", upstream_id=1, rating=5)])

        assert await any_store.staging.count() == 1
        assert (await any_store.staging.get("http://site/a")).rating == 5

    @pytest.mark.asyncio
    async def test_keyset_paging(self, any_store):
        """测试按 URL 键集分页遍历。"""
        rows = [StagingRecord(url=f"http://site/{c}", upstream_id=i) for i, c in enumerate("dbca")]
        await any_store.staging.upsert_many(rows)

        first = await any_store.staging.list_batch(None, 2)
        second = await any_store.staging.list_batch(first[-1].url, 2)
        assert [r.url[-1] for r in first + second] == ["a", "b", "c", "d"]
        assert await any_store.staging.upstream_ids() == {0, 1, 2, 3}

        await any_store.staging.clear()
        assert await any_store.staging.count() == 0


class TestDirtyQueue:
    """脏页队列与租约测试。"""

    @pytest.mark.asyncio
    async def test_mark_dirty_merges(self, any_store):
        """测试同一页面只有一行，原因合并，需求只增不减。"""
        page = await any_store.pages.create(1, "http://site/a")

        assert await any_store.dirty.mark_dirty(page.id, [DirtyReason.RATING_CHANGED], need_b=True, estimated_cost=50)
        assert not await any_store.dirty.mark_dirty(page.id, [DirtyReason.TAGS_CHANGED, DirtyReason.RATING_CHANGED])

        row = await any_store.dirty.get(page.id)
        assert row.reasons == [DirtyReason.RATING_CHANGED, DirtyReason.TAGS_CHANGED]
        assert row.need_b and not row.done_b
        assert not row.need_c
        assert row.estimated_cost == 50

    @pytest.mark.asyncio
    async def test_claim_is_exclusive_until_lease_expires(self, any_store):
        """测试租约有效期内其他领取方拿不到同一行。"""
        page = await any_store.pages.create(1, "http://site/a")
        await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True)

        first = await any_store.dirty.claim(SyncPhase.B, 10, lease_seconds=60, now=BASE_TIME)
        assert [c.page_id for c in first] == [page.id]
        assert await any_store.dirty.claim(SyncPhase.B, 10, lease_seconds=60, now=BASE_TIME + timedelta(seconds=30)) == []

        # 租约过期后可被重新领取，旧持有者无法再完成
        second = await any_store.dirty.claim(SyncPhase.B, 10, lease_seconds=60, now=BASE_TIME + timedelta(seconds=61))
        assert [c.page_id for c in second] == [page.id]
        assert not await any_store.dirty.complete(SyncPhase.B, page.id, first[0].token)
        assert await any_store.dirty.complete(SyncPhase.B, page.id, second[0].token)

        row = await any_store.dirty.get(page.id)
        assert row.done_b and not row.need_b
        assert row.claim_b_token is None

    @pytest.mark.asyncio
    async def test_claim_order_and_limit(self, any_store):
        """测试按估算成本从低到高领取。"""
        for upstream_id, cost in [(1, 30), (2, 10), (3, 20)]:
            page = await any_store.pages.create(upstream_id, f"http://site/{upstream_id}")
            await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True, estimated_cost=cost)

        claims = await any_store.dirty.claim(SyncPhase.B, 2, lease_seconds=60, now=BASE_TIME)
        assert [c.estimated_cost for c in claims] == [10, 20]

    @pytest.mark.asyncio
    async def test_phase_c_waits_for_phase_b(self, any_store):
        """测试 Phase B 未完成时 Phase C 不可领取。"""
        page = await any_store.pages.create(1, "http://site/a")
        await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True, need_c=True)

        assert await any_store.dirty.claim(SyncPhase.C, 10, 60, now=BASE_TIME) == []
        claim = (await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME))[0]
        await any_store.dirty.complete(SyncPhase.B, page.id, claim.token)
        assert len(await any_store.dirty.claim(SyncPhase.C, 10, 60, now=BASE_TIME)) == 1

    @pytest.mark.asyncio
    async def test_failure_and_block(self, any_store):
        """测试暂时失败可重试，永久失败阻塞直到人工解除。"""
        page = await any_store.pages.create(1, "http://site/a")
        await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True)

        claim = (await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME))[0]
        await any_store.dirty.record_failure(SyncPhase.B, page.id, claim.token, "timeout")
        row = await any_store.dirty.get(page.id)
        assert DirtyReason.PREVIOUSLY_FAILED in row.reasons
        assert row.last_error == "timeout"
        assert not row.done_b

        claim = (await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME))[0]
        await any_store.dirty.record_failure(SyncPhase.B, page.id, claim.token, "identity", permanent=True)
        assert await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME) == []
        assert (await any_store.dirty.summary())["blocked"] == 1

        await any_store.dirty.unblock(page.id)
        assert len(await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME)) == 1

    @pytest.mark.asyncio
    async def test_release_and_clear_need(self, any_store):
        page = await any_store.pages.create(1, "http://site/a")
        await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True, need_c=True)

        claim = (await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME))[0]
        await any_store.dirty.release(SyncPhase.B, page.id, claim.token)
        assert len(await any_store.dirty.pending(SyncPhase.B)) == 1

        await any_store.dirty.clear_need(SyncPhase.C, page.id)
        summary = await any_store.dirty.summary()
        assert summary == {"total": 1, "pending_b": 1, "pending_c": 0, "blocked": 0}

    @pytest.mark.asyncio
    async def test_remark_after_done(self, any_store):
        """测试完成后再次标记会重新进入队列。"""
        page = await any_store.pages.create(1, "http://site/a")
        await any_store.dirty.mark_dirty(page.id, [DirtyReason.NEW_PAGE], need_b=True)
        claim = (await any_store.dirty.claim(SyncPhase.B, 10, 60, now=BASE_TIME))[0]
        await any_store.dirty.complete(SyncPhase.B, page.id, claim.token)

        await any_store.dirty.mark_dirty(page.id, [DirtyReason.RATING_CHANGED], need_b=True)
        row = await any_store.dirty.get(page.id)
        assert row.pending(SyncPhase.B)


class TestContentRepository:
    """Phase C 提交测试。"""

    @pytest.mark.asyncio
    async def test_commit_fills_current_version(self, any_store):
        """测试首次提交把正文写入当前版本。"""
        page, version = await page_with_version(any_store)
        content = DeepContent(
            url=page.url,
            source="source v1",
            text_content="text v1",
            attributions=[AttributionRecord(type="AUTHOR", user_id=9, user_name="alice")],
            votes=make_votes(3),
            revisions=make_revisions(2),
        )

        result = await any_store.content.commit_deep(page.id, content, BASE_TIME + timedelta(hours=1))

        assert result.version_id == version.id
        assert result.content_filled and not result.version_opened
        assert (result.votes_added, result.revisions_added, result.attributions_added) == (3, 2, 1)
        assert (await any_store.versions.current(page.id)).source == "source v1"
        assert len(await any_store.content.votes(version.id)) == 3

    @pytest.mark.asyncio
    async def test_commit_is_idempotent(self, any_store):
        """测试重复提交不会产生重复的投票和修订。"""
        page, version = await page_with_version(any_store, source="s")
        content = DeepContent(url=page.url, source="s", votes=make_votes(2), revisions=make_revisions(2))
        await any_store.content.commit_deep(page.id, content, BASE_TIME)

        again = DeepContent(url=page.url, source="s", votes=make_votes(3), revisions=make_revisions(3))
        result = await any_store.content.commit_deep(page.id, again, BASE_TIME)

        assert (result.votes_added, result.revisions_added) == (1, 1)
        assert len(await any_store.content.votes(version.id)) == 3
        assert len(await any_store.content.revisions(version.id)) == 3

    @pytest.mark.asyncio
    async def test_vote_identity(self, any_store):
        """测试注册用户与匿名投票分别去重。"""
        page, version = await page_with_version(any_store, source="s")
        votes = [
            VoteRecord(direction=1, timestamp=BASE_TIME, user_id=5),
            VoteRecord(direction=-1, timestamp=BASE_TIME, anon_key="anon-1"),
            VoteRecord(direction=1, timestamp=BASE_TIME, anon_key="anon-2"),
            VoteRecord(direction=1, timestamp=BASE_TIME, user_id=5),
        ]
        result = await any_store.content.commit_deep(page.id, DeepContent(url=page.url, source="s", votes=votes), BASE_TIME)
        assert result.votes_added == 3

    @pytest.mark.asyncio
    async def test_changed_source_opens_version(self, any_store):
        """测试正文变化时开启新版本，子集合挂在新版本上。"""
        page, version = await page_with_version(any_store, source="old")
        content = DeepContent(url=page.url, source="new", votes=make_votes(1))

        result = await any_store.content.commit_deep(page.id, content, BASE_TIME + timedelta(hours=2))

        assert result.version_opened
        assert result.version_id != version.id
        current = await any_store.versions.current(page.id)
        assert current.source == "new"
        assert current.rating == 10
        assert len(await any_store.content.votes(result.version_id)) == 1
        assert len(await any_store.versions.history(page.id)) == 2

    @pytest.mark.asyncio
    async def test_commit_without_version(self, any_store):
        page = await any_store.pages.create(1, "http://site/a")
        with pytest.raises(IntegrityViolation):
            await any_store.content.commit_deep(page.id, DeepContent(url=page.url, source="s"), BASE_TIME)


class TestConflictRepository:
    """身份冲突登记测试。"""

    @pytest.mark.asyncio
    async def test_flag_deduplicates(self, any_store):
        page = await any_store.pages.create(1, "http://site/a")
        assert await any_store.conflicts.flag("http://site/a", page.id, 1, 2)
        assert not await any_store.conflicts.flag("http://site/a", page.id, 1, 2)
        assert await any_store.conflicts.flag("http://site/a", page.id, 1, 3)

        conflicts = await any_store.conflicts.list_open()
        assert [c.observed_upstream_id for c in conflicts] == [2, 3]
