"""
GraphQL 查询文档。
"""
from typing import Optional

from wikisync.services.upstream.cost import FieldShape

BASE_FIELDS = """
      url
      wikidotId
      title
      rating
      voteCount
      revisionCount
      commentCount
      tags
      category
"""

USER_FIELDS = "user { ... on WikidotUser { displayName wikidotId } }"

ATTRIBUTION_FIELDS = """
      attributions {
        type
        user {
          displayName
          ... on UserWikidotNameReference { wikidotUser { displayName wikidotId } }
        }
        date
        order
      }
"""

REVISION_NODE = f"wikidotId timestamp type comment {USER_FIELDS}"
VOTE_NODE = f"direction timestamp userWikidotId anonKey {USER_FIELDS}"

COUNT_QUERY = """
query CountPages($filter: QueryAggregatePageWikidotPageFilter) {
  aggregatePages(filter: $filter) {
    _count
  }
}
"""


def site_filter(url_prefix: str) -> dict:
    """限定站点的页面过滤条件。"""
    return {"url": {"startsWith": url_prefix}}


def _connection(name: str, node: str, first: int, after_var: Optional[str] = None) -> str:
    after = f", after: ${after_var}" if after_var else ""
    return f"""
      {name}(first: {first}{after}) {{
        edges {{ node {{ {node} }} }}
        pageInfo {{ hasNextPage endCursor }}
      }}
"""


def render_fields(shape: FieldShape) -> str:
    """按字段形状渲染页面选择集。"""
    parts = [BASE_FIELDS]
    if shape.source:
        parts.append("      source\n")
    if shape.text_content:
        parts.append("      textContent\n")
    if shape.alternate_titles:
        parts.append("      alternateTitles { title }\n")
    if shape.parent:
        parts.append("      parent { url }\n")
    if shape.children:
        parts.append("      children { url }\n")
    if shape.attributions:
        parts.append(ATTRIBUTION_FIELDS)
    if shape.revision_limit:
        parts.append(_connection("revisions", REVISION_NODE, shape.revision_limit))
    if shape.vote_limit:
        parts.append(_connection("fuzzyVoteRecords", VOTE_NODE, shape.vote_limit))
    return "".join(parts)


def build_scan_query(shape: FieldShape) -> str:
    """Phase A 分页扫描查询。"""
    return f"""
query ScanPages($filter: QueryPagesFilter, $first: Int, $after: ID) {{
  pages(filter: $filter, first: $first, after: $after) {{
    edges {{
      node {{
        url
        ... on WikidotPage {{
{render_fields(shape)}
        }}
      }}
      cursor
    }}
    pageInfo {{
      hasNextPage
      endCursor
    }}
  }}
}}
"""


def alias_for(index: int) -> str:
    return f"p{index}"


def build_alias_query(shape: FieldShape, count: int) -> str:
    """
    构建别名批量查询: 每个页面一个别名 p{i}，变量 $url{i}。
    """
    declarations = ", ".join(f"$url{i}: URL!" for i in range(count))
    selections = "\n".join(
        f"  {alias_for(i)}: wikidotPage(url: $url{i}) {{\n{render_fields(shape)}  }}"
        for i in range(count)
    )
    return f"query BatchPages({declarations}) {{\n{selections}\n}}\n"


def build_continuation_query(first: int, after_rev: bool, after_vote: bool) -> str:
    """
    Phase C 单页续抓查询，只包含仍有下一页的连接字段。
    """
    declarations = ["$url: URL!"]
    selections = []
    if after_rev:
        declarations.append("$afterRev: ID")
        selections.append(_connection("revisions", REVISION_NODE, first, "afterRev"))
    if after_vote:
        declarations.append("$afterVote: ID")
        selections.append(_connection("fuzzyVoteRecords", VOTE_NODE, first, "afterVote"))
    body = "".join(selections)
    return f"query DeepMore({', '.join(declarations)}) {{\n  wikidotPage(url: $url) {{\n      url\n{body}  }}\n}}\n"
