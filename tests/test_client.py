"""
GraphQL 客户端与 WikiApi 测试，使用 httpx.MockTransport 模拟上游。
"""
import json

import httpx
import pytest

from wikisync.core.errors import PermanentError, RateLimitedError, TransientError
from wikisync.services.upstream.batch import BatchBuilder, BatchItem
from wikisync.services.upstream.client import (
    GraphQLClient,
    WikiApi,
    parse_deep,
    parse_meta,
    parse_retry_after,
)
from wikisync.services.upstream.cost import DEEP_SHAPE, DETAIL_SHAPE

ENDPOINT = "https://upstream.test/graphql"
SITE = "http://scp-wiki-cn.wikidot.com/"


def make_client(handler) -> GraphQLClient:
    return GraphQLClient(ENDPOINT, default_retry_after=30.0, transport=httpx.MockTransport(handler))


def page_node(url: str, wikidot_id: int, **extra) -> dict:
    node = {
        "url": url,
        "wikidotId": str(wikidot_id),
        "title": "SCP-CN-001",
        "rating": 120,
        "voteCount": 130,
        "revisionCount": 12,
        "commentCount": 4,
        "tags": ["scp", "keter"],
        "category": "_default",
    }
    node.update(extra)
    return node


def connection(nodes: list[dict], end_cursor=None) -> dict:
    return {
        "edges": [{"node": node} for node in nodes],
        "pageInfo": {"hasNextPage": end_cursor is not None, "endCursor": end_cursor},
    }


class TestErrorClassification:
    """HTTP / GraphQL 错误归类测试。"""

    @pytest.mark.asyncio
    async def test_429_is_rate_limited(self):
        """测试 HTTP 429 归类为限流并解析 Retry-After。"""
        client = make_client(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
        async with client:
            with pytest.raises(RateLimitedError) as info:
                await client.execute("query { x }")
        assert info.value.retry_after == 12

    @pytest.mark.asyncio
    async def test_429_without_header_uses_default(self):
        client = make_client(lambda request: httpx.Response(429))
        async with client:
            with pytest.raises(RateLimitedError) as info:
                await client.execute("query { x }")
        assert info.value.retry_after == 30.0

    @pytest.mark.asyncio
    async def test_5xx_is_transient(self):
        client = make_client(lambda request: httpx.Response(503))
        async with client:
            with pytest.raises(TransientError) as info:
                await client.execute("query { x }")
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_4xx_is_permanent(self):
        client = make_client(lambda request: httpx.Response(400, text="bad query"))
        async with client:
            with pytest.raises(PermanentError):
                await client.execute("query { x }")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        """测试连接失败归类为暂时性错误。"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        async with client:
            with pytest.raises(TransientError):
                await client.execute("query { x }")

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        async with client:
            with pytest.raises(TransientError):
                await client.execute("query { x }")

    @pytest.mark.asyncio
    async def test_graphql_rate_limit_code(self):
        """测试 GraphQL 错误码表示的限流。"""
        body = {"errors": [{"message": "slow down", "extensions": {"code": "RATE_LIMITED", "retryAfter": 5}}]}
        client = make_client(lambda request: httpx.Response(200, json=body))
        async with client:
            with pytest.raises(RateLimitedError) as info:
                await client.execute("query { x }")
        assert info.value.retry_after == 5

    @pytest.mark.asyncio
    async def test_graphql_error_without_data_is_permanent(self):
        body = {"errors": [{"message": "Cannot query field", "extensions": {"code": "GRAPHQL_VALIDATION_FAILED"}}]}
        client = make_client(lambda request: httpx.Response(200, json=body))
        async with client:
            with pytest.raises(PermanentError):
                await client.execute("query { x }")

    @pytest.mark.asyncio
    async def test_partial_errors_are_returned(self):
        """测试部分别名失败时返回数据和错误。"""
        body = {
            "data": {"p0": page_node(SITE + "a", 1), "p1": None},
            "errors": [{"message": "boom", "path": ["p1"]}],
        }
        client = make_client(lambda request: httpx.Response(200, json=body))
        async with client:
            response = await client.execute("query { x }")
        assert response.errors_by_alias() == {"p1": "boom"}
        assert response.data["p0"]["url"] == SITE + "a"

    def test_retry_after_parsing(self):
        assert parse_retry_after("7", 60) == 7
        assert parse_retry_after(None, 60) == 60
        assert parse_retry_after("not a date", 60) == 60


class TestParsers:
    """响应解析测试。"""

    def test_parse_meta(self):
        meta = parse_meta(page_node(SITE + "scp-cn-001", 42))
        assert meta.upstream_id == 42
        assert meta.rating == 120
        assert meta.tags == ["scp", "keter"]
        assert not meta.is_deleted

    def test_parse_meta_requires_identity(self):
        assert parse_meta({"url": SITE + "x"}) is None
        assert parse_meta(None) is None

    def test_parse_deep_with_cursors(self):
        """测试深度节点解析和游标。"""
        node = page_node(
            SITE + "scp-cn-001", 42,
            source="[[[scp-cn-002]]]",
            textContent="text",
            attributions=[{"type": "AUTHOR", "user": {"displayName": "alice", "wikidotUser": {"wikidotId": "9"}}, "order": 0}],
            revisions=connection([{"wikidotId": "100", "timestamp": "2024-01-01T00:00:00Z", "type": "NEW"}], end_cursor="r1"),
            fuzzyVoteRecords=connection([
                {"direction": 1, "timestamp": "2024-01-02T00:00:00Z", "userWikidotId": "9"},
                {"direction": -1, "timestamp": "2024-01-03T00:00:00Z", "anonKey": "anon-1"},
            ]),
        )
        page = parse_deep(node)

        assert page.content.source == "[[[scp-cn-002]]]"
        assert page.content.attributions[0].user_id == 9
        assert page.content.attributions[0].user_name == "alice"
        assert page.revision_cursor == "r1"
        assert page.vote_cursor is None
        assert not page.complete
        assert [v.key[0] for v in page.content.votes] == ["user", "anon"]


class TestWikiApi:
    """WikiApi 测试。"""

    @pytest.mark.asyncio
    async def test_scan_pages(self):
        """测试分页扫描的变量和结果。"""
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content)["variables"])
            return httpx.Response(200, json={"data": {"pages": {
                "edges": [{"node": page_node(SITE + "a", 1)}, {"node": {"url": SITE + "forum"}}],
                "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
            }}})

        async with make_client(handler) as client:
            page = await WikiApi(client, SITE, page_size=50).scan_pages(None, 500)

        assert seen["first"] == 50
        assert seen["filter"] == {"url": {"startsWith": SITE}}
        assert [m.upstream_id for m in page.items] == [1]
        assert page.end_cursor == "c1"
        assert page.has_next

    @pytest.mark.asyncio
    async def test_fetch_batch_by_alias(self):
        """测试别名结果映射回页面；null 表示页面不存在，错误按别名隔离。"""
        items = [BatchItem(1, SITE + "a", 1), BatchItem(2, SITE + "b", 1), BatchItem(3, SITE + "c", 1)]
        batch = BatchBuilder(soft_limit=100, max_items=10).pack(items, DETAIL_SHAPE)[0]
        body = {
            "data": {"p0": page_node(SITE + "a", 11), "p1": None, "p2": None},
            "errors": [{"message": "resolver failed", "path": ["p2"]}],
        }

        async with make_client(lambda request: httpx.Response(200, json=body)) as client:
            result = await WikiApi(client, SITE).fetch_batch(batch)

        assert result.pages[1].upstream_id == 11
        assert 2 in result.pages and result.pages[2] is None
        assert result.errors == {3: "resolver failed"}
        assert result.permanent == set()

    @pytest.mark.asyncio
    async def test_unparseable_node_is_permanent_error(self):
        """测试节点存在但缺少 wikidotId 时记为永久错误，而不是页面已删除。"""
        items = [BatchItem(7, SITE + "a", 1)]
        body = {"data": {"p0": page_node(SITE + "a", 1, wikidotId=None)}}

        async with make_client(lambda request: httpx.Response(200, json=body)) as client:
            for shape in (DETAIL_SHAPE, DEEP_SHAPE):
                batch = BatchBuilder(soft_limit=10_000, max_items=10).pack(items, shape)[0]
                result = await WikiApi(client, SITE).fetch_batch(batch)

                assert 7 not in result.pages
                assert 7 in result.errors
                assert result.permanent == {7}

    @pytest.mark.asyncio
    async def test_continuation_merges_pages(self):
        """测试续抓合并修订并推进游标。"""
        first = {"data": {"p0": page_node(
            SITE + "a", 1,
            source="src",
            revisions=connection([{"wikidotId": "1", "timestamp": "2024-01-01T00:00:00Z"}], end_cursor="r1"),
            fuzzyVoteRecords=connection([]),
        )}}
        more = {"data": {"wikidotPage": {
            "url": SITE + "a",
            "revisions": connection([{"wikidotId": "2", "timestamp": "2024-01-02T00:00:00Z"}]),
        }}}
        responses = [first, more]
        variables = []

        def handler(request):
            variables.append(json.loads(request.content)["variables"])
            return httpx.Response(200, json=responses.pop(0))

        batch = BatchBuilder(soft_limit=10_000, max_items=10).pack([BatchItem(1, SITE + "a", 1)], DEEP_SHAPE)[0]
        async with make_client(handler) as client:
            api = WikiApi(client, SITE)
            result = await api.fetch_batch(batch)
            page = result.pages[1]
            assert await api.fetch_continuation(page, 100)

        assert variables[1] == {"url": SITE + "a", "afterRev": "r1"}
        assert [r.upstream_id for r in page.content.revisions] == [1, 2]
        assert page.complete

    @pytest.mark.asyncio
    async def test_continuation_page_missing(self):
        body = {"data": {"wikidotPage": None}}
        async with make_client(lambda request: httpx.Response(200, json=body)) as client:
            api = WikiApi(client, SITE)
            page = parse_deep(page_node(SITE + "a", 1, revisions=connection([], end_cursor="r1")))
            assert await api.fetch_continuation(page, 100) is False
