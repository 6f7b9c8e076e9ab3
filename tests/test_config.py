"""
配置加载测试。
"""
import pytest

from wikisync.core.config import CostSettings, DatabaseSettings, RateLimitSettings, Settings
from wikisync.core.errors import ConfigurationError

CONFIG = """
[general]
log_level = "DEBUG"

[upstream]
endpoint = "https://example.test/graphql"

[cost]
bucket_soft_limit = 5000
simple_page_threshold = 300
max_pack_count = 8

[rate_limit]
budget_points = 3000
budget_window_seconds = 60

[sync]
claim_batch_size = 50
deep_revision_jump = 20
"""


class TestSettings:
    """Settings.from_toml 测试。"""

    def test_sections_loaded_from_toml(self, tmp_path):
        """测试 TOML 中的各节被加载到对应设置。"""
        path = tmp_path / "config.toml"
        path.write_text(CONFIG, encoding="utf-8")

        settings = Settings.from_toml(path)

        assert settings.general.log_level == "DEBUG"
        assert settings.upstream.endpoint == "https://example.test/graphql"
        assert settings.cost.require("bucket_soft_limit") == 5000
        assert settings.cost.max_pack_count == 8
        assert settings.rate_limit.require("budget_window_seconds") == 60
        assert settings.sync.claim_batch_size == 50
        assert settings.sync.deep_revision_jump == 20
        # 未出现的节使用默认值
        assert settings.scheduler.concurrency == 4
        assert settings.cost.weights["revisionEdge"] == 5

    def test_missing_file_uses_defaults(self, tmp_path):
        """测试配置文件不存在时使用默认值。"""
        settings = Settings.from_toml(tmp_path / "missing.toml")
        assert settings.sync.scan_page_size == 100
        assert settings.cost.bucket_soft_limit is None


class TestRequiredTuning:
    """调优常量必须显式配置。"""

    def test_cost_require_missing(self):
        """测试缺少 simple_page_threshold 时报错。"""
        with pytest.raises(ConfigurationError, match="simple_page_threshold"):
            CostSettings().require("simple_page_threshold")

    def test_rate_limit_require_missing(self):
        """测试缺少点数预算时报错。"""
        with pytest.raises(ConfigurationError, match="budget_points"):
            RateLimitSettings().require("budget_points")


class TestDatabaseSettings:
    """数据库 URL 构建测试。"""

    def test_url_from_parts(self, monkeypatch):
        """测试由单独字段构建 asyncpg URL。"""
        monkeypatch.delenv("DATABASE_URL", raising=False)
        for key, value in {
            "DB_HOST": "db", "DB_PORT": "5432", "DB_USER": "wiki",
            "DB_PASSWORD": "secret", "DB_NAME": "mirror",
        }.items():
            monkeypatch.setenv(key, value)

        settings = DatabaseSettings(_env_file=None)
        assert settings.require_url() == "postgresql+asyncpg://wiki:secret@db:5432/mirror"

    def test_missing_url(self, monkeypatch):
        """测试未配置数据库时报错。"""
        for key in ("DATABASE_URL", "DB_HOST", "DB_PORT", "DB_USER", "DB_PASSWORD", "DB_NAME"):
            monkeypatch.delenv(key, raising=False)
        with pytest.raises(ConfigurationError):
            DatabaseSettings(_env_file=None).require_url()
