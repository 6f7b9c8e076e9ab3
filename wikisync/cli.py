"""wikisync 命令行入口。"""
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import click

from wikisync import __version__
from wikisync.core.config import Settings, init_settings
from wikisync.core.database import close_database, create_tables, init_database
from wikisync.core.logging import get_logger, setup_logging
from wikisync.services.refgraph import ReferenceGraphPool
from wikisync.services.sync import SyncRunner, build_context, new_run_id
from wikisync.services.upstream import GraphQLClient, WikiApi
from wikisync.store import SyncStore, get_store

logger = get_logger(__name__)


def latest_run_id(base_dir: str) -> Optional[str]:
    """返回检查点目录中最近的一次运行 ID。"""
    root = Path(base_dir)
    if not root.exists():
        return None
    runs = sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name)
    return runs[-1].name if runs else None


@click.group(invoke_without_command=True)
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="配置文件路径 (默认 config/config.toml)")
@click.option("--log-level", default=None, help="覆盖配置中的日志级别")
@click.option("--version", is_flag=True, help="显示版本并退出")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str], version: bool) -> None:
    """wikisync - 上游 wiki 目录的三阶段增量镜像。

    \b
      wikisync init-db              创建数据表
      wikisync sync --phase abc     执行同步
      wikisync seed --page-id 42    手动重新检查页面
      wikisync status               查看队列状态
      wikisync refgraph             计算引用图
    """
    if version:
        click.echo(__version__)
        ctx.exit()

    settings = init_settings(config_path)
    log_file = Path(settings.general.log_file) if settings.general.log_file else None
    setup_logging(level=log_level or settings.general.log_level, log_file=log_file)
    ctx.obj = settings

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@main.command("init-db")
@click.pass_obj
def init_db(settings: Settings) -> None:
    """按模型创建数据表。"""

    async def _run() -> None:
        try:
            await init_database()
            await create_tables()
        finally:
            await close_database()

    asyncio.run(_run())
    click.echo("数据表已创建")


@main.command()
@click.option("--phase", "phases", default="abc", show_default=True, help="要执行的阶段，例如 a、bc、abc")
@click.option("--run-id", default=None, help="指定运行 ID (相同 ID 会从检查点续跑)")
@click.option("--resume", is_flag=True, help="续跑最近一次运行")
@click.option("--concurrency", type=int, default=None, help="覆盖调度并发数")
@click.pass_obj
def sync(settings: Settings, phases: str, run_id: Optional[str], resume: bool, concurrency: Optional[int]) -> None:
    """执行增量同步。"""
    if resume and not run_id:
        run_id = latest_run_id(settings.checkpoint.dir)
        if run_id is None:
            raise click.ClickException("没有可续跑的运行")
    run_id = run_id or new_run_id()

    async def _run():
        store = get_store()
        try:
            async with GraphQLClient.from_settings(settings.upstream) as client:
                api = WikiApi(client, settings.upstream.site_url_prefix, page_size=settings.sync.scan_page_size)
                runner = SyncRunner(build_context(store, api, run_id, settings, concurrency))
                _install_stop_handlers(runner)
                return await runner.run(phases)
        finally:
            await close_database()

    summary = asyncio.run(_run())
    click.echo(f"run_id: {summary.run_id}")
    for report in (summary.scan, summary.detail, summary.deep):
        if report is not None:
            click.echo(str(report))
    click.echo(
        f"待 Phase B: {summary.pending['pending_b']}  待 Phase C: {summary.pending['pending_c']}  "
        f"阻塞: {summary.pending['blocked']}"
    )
    if summary.stopped:
        raise click.ClickException(f"同步被中断，可使用 --run-id {summary.run_id} 续跑")


def _install_stop_handlers(runner: SyncRunner) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, runner.stop)
        except NotImplementedError:
            logger.debug(f"当前平台不支持信号 {sig.name} 的处理器")


async def _resolve_pages(store: SyncStore, page_ids: tuple[int, ...], urls: tuple[str, ...]) -> list[int]:
    resolved = list(page_ids)
    for url in urls:
        page = await store.pages.get_by_url(url)
        if page is None:
            logger.warning(f"未找到页面: {url}")
        else:
            resolved.append(page.id)
    return resolved


@main.command()
@click.option("--page-id", "page_ids", type=int, multiple=True, help="页面 ID，可重复")
@click.option("--url", "urls", multiple=True, help="页面 URL，可重复")
@click.option("--deep", is_flag=True, help="同时标记 Phase C")
@click.pass_obj
def seed(settings: Settings, page_ids: tuple[int, ...], urls: tuple[str, ...], deep: bool) -> None:
    """手动标记页面重新检查，并解除阻塞。"""
    if not page_ids and not urls:
        raise click.UsageError("至少指定一个 --page-id 或 --url")

    async def _run() -> int:
        store = get_store()
        try:
            async with GraphQLClient.from_settings(settings.upstream) as client:
                api = WikiApi(client, settings.upstream.site_url_prefix)
                runner = SyncRunner(build_context(store, api, new_run_id(), settings))
                return await runner.seed(await _resolve_pages(store, page_ids, urls), deep=deep)
        finally:
            await close_database()

    click.echo(f"已标记 {asyncio.run(_run())} 个页面")


@main.command()
@click.pass_obj
def status(settings: Settings) -> None:
    """显示脏页队列和未解决的身份冲突。"""

    async def _run():
        store = get_store()
        try:
            return await store.dirty.summary(), await store.conflicts.list_open()
        finally:
            await close_database()

    summary, conflicts = asyncio.run(_run())
    click.echo(
        f"脏页: {summary['total']}  待 Phase B: {summary['pending_b']}  "
        f"待 Phase C: {summary['pending_c']}  阻塞: {summary['blocked']}"
    )
    for conflict in conflicts:
        click.echo(
            f"冲突 {conflict.url}: 页面 {conflict.existing_page_id} "
            f"上游 ID {conflict.existing_upstream_id} -> {conflict.observed_upstream_id}"
        )


@main.command()
@click.option("--page-id", "page_ids", type=int, multiple=True, help="只计算指定页面")
@click.option("--output", type=click.Path(path_type=Path), default=None, help="边输出为 JSONL 文件")
@click.pass_obj
def refgraph(settings: Settings, page_ids: tuple[int, ...], output: Optional[Path]) -> None:
    """计算当前版本之间的引用图。"""

    async def _run():
        store = get_store()
        try:
            pool = ReferenceGraphPool.from_settings(store.versions, settings.refgraph)
            return await pool.compute(list(page_ids) or None)
        finally:
            await close_database()

    result = asyncio.run(_run())
    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with open(output, "w", encoding="utf-8") as f:
            for edge in result.edges:
                f.write(json.dumps({
                    "sourcePageId": edge.source_page_id,
                    "targetPath": edge.target_path,
                    "weight": edge.weight,
                }, ensure_ascii=False) + "\n")
    click.echo(f"{len(result.edges)} 条边，{len(result.errors)} 个任务失败")
    if not result.ok:
        raise click.ClickException("; ".join(result.errors))


if __name__ == "__main__":
    main()
