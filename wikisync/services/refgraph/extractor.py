"""
页面源码中的站内引用解析。

支持三种写法:
- TRIPLE: [[[target|显示文本]]]
- SHORT: [target 显示文本]
- DIRECT: 直接写出的站点 URL
目标统一规范化为小写 slug 路径，例如 /scp-001、/component:theme。
"""
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Optional

DEFAULT_SITE_DOMAIN = "scp-wiki-cn.wikidot.com"
MAX_DISPLAY_VARIANTS = 10

TRIPLE_PATTERN = re.compile(r"\[\[\[([\s\S]*?)\]\]\]")
SHORT_PATTERN = re.compile(r"(?<!\[)\[(?!\[)([^\]\s]+)\s+([^\]]+?)\]")
HTTP_PREFIX = re.compile(r"^https?://", re.IGNORECASE)
PROTOCOL_RELATIVE = re.compile(r"^//")
LOCAL_FILES = re.compile(r"^local--files/", re.IGNORECASE)
INVALID_PREFIXES = re.compile(r"^(?:javascript:|mailto:)", re.IGNORECASE)
QUOTES = re.compile(r"[\"'“”‘’`\[\]]+")
NON_SLUG = re.compile(r"[^a-zA-Z0-9:\-]+")


class LinkType(PyEnum):
    TRIPLE = "TRIPLE"
    SHORT = "SHORT"
    DIRECT = "DIRECT"


@dataclass
class Reference:
    """同一类型、同一目标的引用聚合。"""
    link_type: LinkType
    target_path: str
    fragment: Optional[str] = None
    occurrence: int = 0
    displays: list[str] = field(default_factory=list)

    def add_display(self, value: Optional[str]) -> None:
        value = (value or "").strip()
        if value and value not in self.displays and len(self.displays) < MAX_DISPLAY_VARIANTS:
            self.displays.append(value)


def _site_pattern(site_domain: str) -> re.Pattern:
    return re.compile(rf"^(?:https?://)?(?:www\.)?{re.escape(site_domain)}", re.IGNORECASE)


def slugify_segment(text: str, allow_colon: bool) -> str:
    normalized = unicodedata.normalize("NFKC", text)
    normalized = QUOTES.sub(" ", normalized)
    normalized = NON_SLUG.sub(" ", normalized).strip().lower()
    if not normalized:
        return ""
    slug = re.sub(r"\s+", "-", normalized)
    slug = re.sub(r"-+", "-", slug).strip("-")
    if allow_colon:
        return slug.replace(":-", ":")
    return slug.replace(":", "-")


def normalize_target(raw: str, site_domain: str = DEFAULT_SITE_DOMAIN) -> Optional[tuple[str, Optional[str]]]:
    """
    规范化链接目标，返回 (路径, 锚点)。

    外站链接、local--files、javascript: / mailto: 返回 None。
    """
    working = (raw or "").strip()
    if working.startswith("*"):
        working = working[1:].strip()
    if not working:
        return None
    if PROTOCOL_RELATIVE.match(working):
        working = PROTOCOL_RELATIVE.sub("https://", working)

    site = _site_pattern(site_domain)
    if HTTP_PREFIX.match(working) and not site.match(working):
        return None
    working = site.sub("", working)
    if INVALID_PREFIXES.match(working):
        return None

    fragment = None
    if "#" in working:
        working, _, tail = working.partition("#")
        fragment = tail.strip() or None
    working = working.strip()
    if not working or LOCAL_FILES.match(working):
        return None

    if working.startswith("/"):
        segments = []
        for index, segment in enumerate(working.lstrip("/").split("/")):
            segment = segment.strip()
            if not segment:
                continue
            if LOCAL_FILES.match(segment + "/"):
                return None
            slug = slugify_segment(segment, allow_colon=index == 0)
            if slug:
                segments.append(slug)
        if not segments:
            return None
        path = "/" + "/".join(segments)
    else:
        slug = slugify_segment(working, allow_colon=True)
        if not slug:
            return None
        path = "/" + slug

    if path == "/" or LOCAL_FILES.match(path.lstrip("/")):
        return None
    return path, fragment


def extract_references(source: Optional[str], site_domain: str = DEFAULT_SITE_DOMAIN) -> list[Reference]:
    """提取源码中的站内引用，按 (类型, 路径, 锚点) 聚合出现次数。"""
    if not source:
        return []

    found: dict[tuple, Reference] = {}

    def record(link_type: LinkType, target: str, display: Optional[str] = None) -> None:
        normalized = normalize_target(target, site_domain)
        if normalized is None:
            return
        path, fragment = normalized
        key = (link_type, path, fragment)
        ref = found.get(key)
        if ref is None:
            ref = found[key] = Reference(link_type=link_type, target_path=path, fragment=fragment)
        ref.occurrence += 1
        ref.add_display(display)

    for match in TRIPLE_PATTERN.finditer(source):
        inner = match.group(1)
        if not inner:
            continue
        target, _, display = inner.partition("|")
        record(LinkType.TRIPLE, target, display or None)

    # 三括号链接已计数，替换为空白避免被短链接规则重复匹配
    remainder = TRIPLE_PATTERN.sub(lambda m: " " * len(m.group(0)), source)
    for match in SHORT_PATTERN.finditer(remainder):
        record(LinkType.SHORT, match.group(1), match.group(2))

    direct = re.compile(rf"https?://(?:www\.)?{re.escape(site_domain)}/[^\s\"'<>\]]+", re.IGNORECASE)
    for match in direct.finditer(source):
        # [url 文字] 与 [*url 文字] 已按短链接计数
        if source[max(match.start() - 2, 0):match.start()].endswith(("[", "[*")):
            continue
        record(LinkType.DIRECT, match.group(0))

    return list(found.values())
