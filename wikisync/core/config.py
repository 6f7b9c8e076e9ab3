"""
wikisync 配置模块。
从 config.toml 和环境变量加载设置。
"""
from pathlib import Path
from typing import Optional

import tomli
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wikisync.core.errors import ConfigurationError


def load_toml_config(config_path: Path) -> dict:
    """从 TOML 文件加载配置。"""
    if config_path.exists():
        with open(config_path, "rb") as f:
            return tomli.load(f)
    return {}


class GeneralSettings(BaseSettings):
    """通用应用设置。"""
    app_name: str = "wikisync"
    env: str = "development"
    log_level: str = "INFO"
    log_file: Optional[str] = None


class UpstreamSettings(BaseSettings):
    """上游 GraphQL 接口设置。"""
    model_config = SettingsConfigDict(env_prefix="UPSTREAM_", extra="ignore")

    endpoint: str = "https://apiv2.crom.avn.sh/graphql"
    site_url_prefix: str = "http://scp-wiki-cn.wikidot.com/"
    timeout_seconds: float = 60.0
    default_retry_after_seconds: float = 60.0


def default_cost_weights() -> dict[str, int]:
    return {
        "wikidotPage": 1,
        "attributions": 10,
        "alternateTitles": 1,
        "children": 10,
        "parent": 1,
        "source": 1,
        "textContent": 1,
        "revisionEdge": 5,
        "voteEdge": 3,
    }


class CostSettings(BaseSettings):
    """
    查询成本设置。

    bucket_soft_limit 与 simple_page_threshold 取决于上游的计费规则，
    代码中不提供默认值，必须在 config.toml 中显式配置。
    """
    model_config = SettingsConfigDict(env_prefix="COST_", extra="ignore")

    bucket_soft_limit: Optional[int] = None
    simple_page_threshold: Optional[int] = None
    min_factor: int = 5
    max_first: int = 100
    max_pack_count: int = 15
    weights: dict[str, int] = Field(default_factory=default_cost_weights)

    def require(self, name: str) -> int:
        """读取必填的调优常量，未配置时报错。"""
        value = getattr(self, name)
        if value is None:
            raise ConfigurationError(f"缺少必填配置: cost.{name}")
        return value


class RateLimitSettings(BaseSettings):
    """速率限制设置 (点数预算 / 时间窗口)。"""
    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", extra="ignore")

    budget_points: Optional[int] = None
    budget_window_seconds: Optional[float] = None

    def require(self, name: str) -> float:
        value = getattr(self, name)
        if value is None:
            raise ConfigurationError(f"缺少必填配置: rate_limit.{name}")
        return value


class SchedulerSettings(BaseSettings):
    """任务调度器设置。"""
    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", extra="ignore")

    concurrency: int = 4
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    claim_lease_seconds: int = 300


class SyncSettings(BaseSettings):
    """三阶段同步设置。"""
    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    scan_page_size: int = 100
    claim_batch_size: int = 500
    deep_revision_jump: Optional[int] = None


class CheckpointSettings(BaseSettings):
    """检查点日志设置。"""
    model_config = SettingsConfigDict(env_prefix="CHECKPOINT_", extra="ignore")

    dir: str = "./data/checkpoints"


class RefGraphSettings(BaseSettings):
    """引用图计算设置。"""
    model_config = SettingsConfigDict(env_prefix="REFGRAPH_", extra="ignore")

    workers: int = 2
    batch_size: int = 200
    site_domain: str = "scp-wiki-cn.wikidot.com"


class DatabaseSettings(BaseSettings):
    """数据库设置。"""
    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # 允许直接配置完整 URL
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    # 也可以通过单独的字段配置
    db_host: Optional[str] = Field(default=None, alias="DB_HOST")
    db_port: Optional[int] = Field(default=None, alias="DB_PORT")
    db_user: Optional[str] = Field(default=None, alias="DB_USER")
    db_password: Optional[str] = Field(default=None, alias="DB_PASSWORD")
    db_name: Optional[str] = Field(default=None, alias="DB_NAME")

    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout_seconds: int = 30
    echo_sql: bool = False

    @model_validator(mode='after')
    def build_connection_url(self) -> 'DatabaseSettings':
        """由单独字段构建连接 URL。"""
        if self.database_url:
            return self

        parts = [self.db_host, self.db_port, self.db_user, self.db_password, self.db_name]
        if all(parts):
            # 默认为 PostgreSQL + AsyncPG
            self.database_url = (
                f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
                f"{self.db_host}:{self.db_port}/{self.db_name}"
            )
        return self

    def require_url(self) -> str:
        """返回连接 URL，未配置时报错。"""
        if not self.database_url:
            raise ConfigurationError(
                "Missing database configuration. Must provide either DATABASE_URL or all of: "
                "DB_HOST, DB_PORT, DB_USER, DB_PASSWORD, DB_NAME"
            )
        return self.database_url


class Settings(BaseSettings):
    """主设置容器。"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    cost: CostSettings = Field(default_factory=CostSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    refgraph: RefGraphSettings = Field(default_factory=RefGraphSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    @classmethod
    def from_toml(cls, config_path: Optional[Path] = None) -> "Settings":
        """从 TOML 文件和环境变量加载设置。"""
        if config_path is None:
            # 尝试在常见位置找到 config.toml
            for path in [
                Path("config/config.toml"),
                Path("../config/config.toml"),
                Path(__file__).parent.parent.parent / "config" / "config.toml"
            ]:
                if path.exists():
                    config_path = path
                    break

        toml_config = {}
        if config_path and config_path.exists():
            toml_config = load_toml_config(config_path)

        # 从 TOML 构建嵌套设置
        sections = {
            "general": GeneralSettings,
            "upstream": UpstreamSettings,
            "cost": CostSettings,
            "rate_limit": RateLimitSettings,
            "scheduler": SchedulerSettings,
            "sync": SyncSettings,
            "checkpoint": CheckpointSettings,
            "refgraph": RefGraphSettings,
            "database": DatabaseSettings,
        }
        settings_dict = {}
        for key, section_cls in sections.items():
            if key in toml_config:
                settings_dict[key] = section_cls(**toml_config[key])

        return cls(**settings_dict)


# 全局设置实例
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """获取全局设置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings.from_toml()
    return _settings


def init_settings(config_path: Optional[Path] = None) -> Settings:
    """从指定配置文件初始化设置。"""
    global _settings
    _settings = Settings.from_toml(config_path)
    return _settings
