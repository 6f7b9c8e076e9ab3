"""
上游 GraphQL 客户端。

GraphQLClient 只负责发送请求并把失败归类为
RateLimitedError / TransientError / PermanentError，从不自行重试；
重试策略由调度器统一处理。WikiApi 在其上提供类型化的页面查询。
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from wikisync.core.config import UpstreamSettings, get_settings
from wikisync.core.errors import PermanentError, RateLimitedError, TransientError
from wikisync.core.logging import get_logger
from wikisync.services.upstream.batch import Batch
from wikisync.services.upstream.queries import (
    COUNT_QUERY,
    build_continuation_query,
    build_scan_query,
    site_filter,
)
from wikisync.services.upstream.cost import META_SHAPE
from wikisync.store.records import (
    AttributionRecord,
    DeepContent,
    PageMeta,
    RevisionRecord,
    VoteRecord,
)

logger = get_logger(__name__)

RATE_LIMIT_CODES = {"RATE_LIMITED", "TOO_MANY_REQUESTS", "RATE_LIMIT_EXCEEDED"}
TRANSIENT_CODES = {"INTERNAL_SERVER_ERROR", "SERVICE_UNAVAILABLE", "TIMEOUT", "GATEWAY_TIMEOUT"}


@dataclass
class GraphQLResponse:
    """GraphQL 响应。errors 中可能只包含部分别名的错误。"""
    data: dict[str, Any]
    errors: list[dict[str, Any]] = field(default_factory=list)

    def errors_by_alias(self) -> dict[str, str]:
        """按别名 (path 第一段) 归并错误信息。"""
        result: dict[str, str] = {}
        for error in self.errors:
            path = error.get("path") or []
            if path:
                result.setdefault(str(path[0]), error.get("message", "unknown error"))
        return result


def parse_retry_after(value: Optional[str], default: float) -> float:
    """解析 Retry-After 头 (秒数或 HTTP 日期)。"""
    if not value:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _error_code(error: dict) -> str:
    return str((error.get("extensions") or {}).get("code", "")).upper()


class GraphQLClient:
    """
    基于 httpx 的 GraphQL 客户端。

    用法:
        async with GraphQLClient.from_settings() as client:
            response = await client.execute(query, variables)
    """

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 60.0,
        default_retry_after: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.endpoint = endpoint
        self.default_retry_after = default_retry_after
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json", **(headers or {})},
        )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[UpstreamSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GraphQLClient":
        settings = settings or get_settings().upstream
        return cls(
            endpoint=settings.endpoint,
            timeout_seconds=settings.timeout_seconds,
            default_retry_after=settings.default_retry_after_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "GraphQLClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def execute(self, query: str, variables: Optional[dict] = None) -> GraphQLResponse:
        """发送查询并归类错误。"""
        try:
            response = await self._client.post(
                self.endpoint, json={"query": query, "variables": variables or {}}
            )
        except httpx.TimeoutException as exc:
            raise TransientError(f"请求超时: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"连接失败: {exc}") from exc

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"), self.default_retry_after)
            raise RateLimitedError(f"上游限流，{retry_after:.0f}s 后重试", retry_after=retry_after)
        if status >= 500:
            raise TransientError(f"上游服务错误 HTTP {status}", status_code=status)
        if status >= 400:
            raise PermanentError(f"请求被拒绝 HTTP {status}: {response.text[:200]}", status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientError(f"响应不是合法 JSON (HTTP {status})", status_code=status) from exc

        errors = payload.get("errors") or []
        data = payload.get("data")
        self._raise_for_errors(errors, has_data=bool(data))
        return GraphQLResponse(data=data or {}, errors=errors)

    def _raise_for_errors(self, errors: list[dict], has_data: bool) -> None:
        if not errors:
            return
        codes = {_error_code(error) for error in errors}
        if codes & RATE_LIMIT_CODES:
            retry_after = self.default_retry_after
            for error in errors:
                value = (error.get("extensions") or {}).get("retryAfter")
                if value is not None:
                    retry_after = parse_retry_after(str(value), self.default_retry_after)
                    break
            raise RateLimitedError("上游 GraphQL 限流", retry_after=retry_after, status_code=None)
        if has_data:
            # 部分成功: 交给调用方按别名处理
            return
        message = "; ".join(str(error.get("message", "")) for error in errors)[:500]
        if codes & TRANSIENT_CODES:
            raise TransientError(f"GraphQL 暂时性错误: {message}")
        raise PermanentError(f"GraphQL 错误: {message}")


# 解析工具

def _int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_time(value: Any) -> Optional[datetime]:
    """解析 ISO 8601 时间，统一为 UTC。"""
    if not value:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_meta(node: Optional[dict]) -> Optional[PageMeta]:
    """解析页面基础字段。缺少 wikidotId 的节点视为无效。"""
    if not node:
        return None
    upstream_id = _int(node.get("wikidotId"))
    if upstream_id is None or not node.get("url"):
        return None
    return PageMeta(
        url=node["url"],
        upstream_id=upstream_id,
        title=node.get("title"),
        rating=_int(node.get("rating")),
        vote_count=_int(node.get("voteCount")),
        revision_count=_int(node.get("revisionCount")),
        comment_count=_int(node.get("commentCount")),
        tags=list(node.get("tags") or []),
        category=node.get("category"),
    )


def _user(node: Optional[dict]) -> tuple[Optional[int], Optional[str]]:
    if not node:
        return None, None
    linked = node.get("wikidotUser") or {}
    user_id = _int(node.get("wikidotId")) or _int(linked.get("wikidotId"))
    name = node.get("displayName") or linked.get("displayName")
    return user_id, name


def parse_attributions(items: Optional[list]) -> list[AttributionRecord]:
    result = []
    for item in items or []:
        user_id, name = _user(item.get("user"))
        if user_id is None and not name:
            continue
        result.append(AttributionRecord(
            type=item.get("type") or "unknown",
            user_id=user_id,
            user_name=name,
            order=_int(item.get("order")) or 0,
            date=parse_time(item.get("date")),
        ))
    return result


def parse_vote(node: dict) -> Optional[VoteRecord]:
    timestamp = parse_time(node.get("timestamp"))
    if timestamp is None:
        return None
    user_id, name = _user(node.get("user"))
    return VoteRecord(
        direction=_int(node.get("direction")) or 0,
        timestamp=timestamp,
        user_id=_int(node.get("userWikidotId")) or user_id,
        user_name=name,
        anon_key=node.get("anonKey"),
    )


def parse_revision(node: dict) -> Optional[RevisionRecord]:
    upstream_id = _int(node.get("wikidotId"))
    timestamp = parse_time(node.get("timestamp"))
    if upstream_id is None or timestamp is None:
        return None
    user_id, name = _user(node.get("user"))
    return RevisionRecord(
        upstream_id=upstream_id,
        timestamp=timestamp,
        type=node.get("type"),
        user_id=user_id,
        user_name=name,
        comment=node.get("comment"),
    )


def _connection(node: dict, name: str) -> tuple[list[dict], Optional[str]]:
    """返回 (节点列表, 下一页游标)；没有下一页时游标为 None。"""
    conn = node.get(name) or {}
    nodes = [edge.get("node") or {} for edge in conn.get("edges") or []]
    info = conn.get("pageInfo") or {}
    cursor = info.get("endCursor") if info.get("hasNextPage") else None
    return nodes, cursor


@dataclass
class ScanPage:
    """Phase A 一页扫描结果。"""
    items: list[PageMeta]
    end_cursor: Optional[str]
    has_next: bool


@dataclass
class DeepPage:
    """Phase C 单页抓取结果，游标非空表示对应连接还有下一页。"""
    meta: Optional[PageMeta]
    content: DeepContent
    revision_cursor: Optional[str] = None
    vote_cursor: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.revision_cursor is None and self.vote_cursor is None

    def absorb(self, node: dict) -> None:
        """合并一次续抓的连接数据并推进游标。"""
        if self.revision_cursor is not None:
            nodes, self.revision_cursor = _connection(node, "revisions")
            self.content.revisions.extend(r for r in map(parse_revision, nodes) if r)
        if self.vote_cursor is not None:
            nodes, self.vote_cursor = _connection(node, "fuzzyVoteRecords")
            self.content.votes.extend(v for v in map(parse_vote, nodes) if v)


def parse_deep(node: dict) -> DeepPage:
    revisions, revision_cursor = _connection(node, "revisions")
    votes, vote_cursor = _connection(node, "fuzzyVoteRecords")
    content = DeepContent(
        url=node.get("url", ""),
        source=node.get("source"),
        text_content=node.get("textContent"),
        attributions=parse_attributions(node.get("attributions")),
        votes=[v for v in map(parse_vote, votes) if v],
        revisions=[r for r in map(parse_revision, revisions) if r],
    )
    return DeepPage(
        meta=parse_meta(node),
        content=content,
        revision_cursor=revision_cursor,
        vote_cursor=vote_cursor,
    )


@dataclass
class BatchResult:
    """
    别名批量查询的结果，按 BatchItem.key 索引。

    pages 中值为 None 表示上游已不存在该页面；errors 为单个别名的失败，
    其中 permanent 里的 key 重试无意义 (例如节点缺少必需字段)。
    """
    pages: dict[int, Any] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)
    permanent: set[int] = field(default_factory=set)

    def reject(self, key: int, error: str) -> None:
        self.errors[key] = error
        self.permanent.add(key)


class WikiApi:
    """面向同步流程的上游接口。"""

    def __init__(self, client: GraphQLClient, site_url_prefix: str, page_size: int = 100):
        self.client = client
        self.site_url_prefix = site_url_prefix
        self.page_size = page_size

    async def count_pages(self) -> int:
        response = await self.client.execute(COUNT_QUERY, {"filter": site_filter(self.site_url_prefix)})
        return int((response.data.get("aggregatePages") or {}).get("_count") or 0)

    async def scan_pages(self, after: Optional[str], first: Optional[int] = None) -> ScanPage:
        variables = {
            "filter": site_filter(self.site_url_prefix),
            "first": min(first or self.page_size, self.page_size),
            "after": after,
        }
        response = await self.client.execute(build_scan_query(META_SHAPE), variables)
        pages = response.data.get("pages") or {}
        items = []
        for edge in pages.get("edges") or []:
            meta = parse_meta(edge.get("node"))
            if meta is not None:
                items.append(meta)
        info = pages.get("pageInfo") or {}
        return ScanPage(items=items, end_cursor=info.get("endCursor"), has_next=bool(info.get("hasNextPage")))

    async def fetch_batch(self, batch: Batch) -> BatchResult:
        """
        执行别名批量查询。

        深度形状返回 DeepPage，其余返回 PageMeta。
        """
        query, variables = batch.to_request()
        response = await self.client.execute(query, variables)
        alias_errors = response.errors_by_alias()
        deep = bool(batch.shape.revision_limit or batch.shape.vote_limit or batch.shape.source)

        result = BatchResult()
        for alias, item in batch.aliases().items():
            if alias in alias_errors:
                result.errors[item.key] = alias_errors[alias]
                continue
            node = response.data.get(alias)
            if node is None:
                result.pages[item.key] = None
                continue
            page = parse_deep(node) if deep else parse_meta(node)
            meta = page.meta if deep else page
            if meta is None:
                # 节点存在但无法解析，不能当作删除处理
                result.reject(item.key, f"{alias} 返回的页面缺少 url 或 wikidotId")
                continue
            if deep:
                page.content.url = page.content.url or item.url
            result.pages[item.key] = page
        return result

    async def fetch_continuation(self, page: DeepPage, first: int) -> bool:
        """
        续抓一页修订/投票，结果合并进 page。

        返回 False 表示上游已找不到该页面。
        """
        query = build_continuation_query(
            first,
            after_rev=page.revision_cursor is not None,
            after_vote=page.vote_cursor is not None,
        )
        variables = {"url": page.content.url}
        if page.revision_cursor is not None:
            variables["afterRev"] = page.revision_cursor
        if page.vote_cursor is not None:
            variables["afterVote"] = page.vote_cursor
        response = await self.client.execute(query, variables)
        alias_errors = response.errors_by_alias()
        if "wikidotPage" in alias_errors:
            raise TransientError(f"续抓失败: {alias_errors['wikidotPage']}")
        node = response.data.get("wikidotPage")
        if node is None:
            return False
        page.absorb(node)
        return True
