"""
命令行接口模块 - CLI Module

Command line interface for the registration engine: start or resume a
registration, inspect and reset the persisted workflow, run the smart
validator and the health check, and list cached accounts.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .account_generator import AccountGenerator
from .config import RegflowConfig, load_config
from .exceptions import RegflowError
from .models.registration import RecordStatus
from .services.api_client import AccountServiceClient
from .services.automation.registration_state_machine import RegistrationStateMachine
from .services.health_service import HealthService
from .services.orchestrator import RegistrationOrchestrator, record_from_metadata
from .services.persistence_service import RecordCache
from .services.smart_validator import SmartValidator
from .services.state_store import FileStateStore
from .services.state_sync import StateSyncManager

STATUS_STYLES = {
    "healthy": "green",
    "warning": "yellow",
    "error": "red",
    "unknown": "dim",
}


class CLIHandler:
    """CLI处理器类 - CLI Handler Class"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.config: RegflowConfig = RegflowConfig()

    def create_argument_parser(self) -> argparse.ArgumentParser:
        """
        创建命令行参数解析器
        Create command line argument parser
        """
        parser = argparse.ArgumentParser(
            description="Registration orchestration engine",
            prog="regflow",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--config", type=str, help="JSON configuration file")
        parser.add_argument("--state-dir", type=str, help="Directory holding the shared workflow state")
        parser.add_argument("--verbose", action="store_true", help="Enable verbose logging output")
        parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

        subparsers = parser.add_subparsers(dest="command", required=True)

        start = subparsers.add_parser("start", help="Start a registration, or resume the saved one")
        start.add_argument("--url", type=str, help="Registration page URL (overrides engine.registration_url)")
        start.add_argument("--headless", action="store_true", help="Run the browser without a window")

        subparsers.add_parser("status", help="Show the persisted workflow state")
        subparsers.add_parser("restore", help="Validate the saved workflow and clear it if it is stale")
        subparsers.add_parser("reset", help="Reset the workflow and clear the shared state")
        subparsers.add_parser("validate", help="Show the smart validator verdict for the saved workflow")
        subparsers.add_parser("health", help="Run the health check")

        accounts = subparsers.add_parser("accounts", help="List cached registration records")
        accounts.add_argument("--status", choices=[s.value for s in RecordStatus], help="Filter by status")
        accounts.add_argument("--limit", type=int, default=50, help="Maximum number of rows (default: 50)")
        accounts.add_argument("--export", type=str, metavar="PATH", help="Export the records to a CSV file")

        return parser

    def setup_logging(self, verbose: bool = False):
        """设置日志系统 - Route logging through rich"""
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=self.console, rich_tracebacks=True, show_path=verbose)],
            force=True,
        )

    def load(self, args: argparse.Namespace) -> RegflowConfig:
        self.config = load_config(args.config)
        if args.state_dir:
            self.config.engine.state_dir = args.state_dir
        return self.config

    # ---- component wiring ----

    def build_store(self) -> FileStateStore:
        engine = self.config.engine
        return FileStateStore(engine.state_dir, lock_timeout=engine.lock_timeout)

    def build_fsm(self, store: FileStateStore) -> RegistrationStateMachine:
        return RegistrationStateMachine(store=store, max_retries=self.config.engine.max_retries)

    def build_sync(self, store: FileStateStore, context_id: str = "cli") -> StateSyncManager:
        engine = self.config.engine
        return StateSyncManager(
            store,
            context_id=context_id,
            lock_timeout=engine.lock_timeout,
            stale_after=engine.lock_stale_after,
            settle_delay=engine.lock_settle_delay,
            poll_interval=engine.lock_poll_interval,
            heartbeat_interval=engine.heartbeat_interval,
            sync_stale_after=engine.sync_stale_after,
        )

    def build_validator(self, api_client: AccountServiceClient) -> SmartValidator:
        engine = self.config.engine
        return SmartValidator(
            api_client,
            expire_after=engine.expire_after,
            warn_after=engine.warn_after,
            call_timeout=engine.validator_call_timeout,
        )

    # ---- commands ----

    async def cmd_status(self, args: argparse.Namespace) -> bool:
        store = self.build_store()
        try:
            fsm = self.build_fsm(store)
            loaded = await fsm.load_from_storage()
        finally:
            await store.close()

        if not loaded:
            self.console.print(Panel("No saved registration", title="Status", border_style="dim"))
            return True
        self.render_state(fsm)
        return True

    async def cmd_validate(self, args: argparse.Namespace) -> bool:
        store = self.build_store()
        api_client = AccountServiceClient(self.config.api)
        try:
            fsm = self.build_fsm(store)
            await fsm.load_from_storage()
            verdict = await self.build_validator(api_client).validate_account_state(
                record_from_metadata(fsm.get_metadata())
            )
        finally:
            await api_client.aclose()
            await store.close()

        table = Table(title="Validation verdict", box=box.ROUNDED, show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key, value in verdict.to_dict().items():
            table.add_row(key, "" if value is None else str(value))
        self.console.print(table)
        return True

    async def cmd_restore(self, args: argparse.Namespace) -> bool:
        store = self.build_store()
        api_client = AccountServiceClient(self.config.api)
        sync = self.build_sync(store)
        try:
            fsm = self.build_fsm(store)
            if not await fsm.load_from_storage():
                self.console.print("[dim]No saved registration[/dim]")
                return True
            validator = self.build_validator(api_client)

            async def check():
                return await validator.smart_check_and_handle(record_from_metadata(fsm.get_metadata()), fsm)

            outcome = await sync.execute_with_lock(check)
        finally:
            await api_client.aclose()
            await store.close()

        verdict = outcome.validation
        self.console.print(Panel(
            f"Status: [bold]{verdict.real_status.value}[/bold]\n"
            f"Reason: {verdict.reason}\n"
            f"Action: [bold]{outcome.result.action}[/bold] - {outcome.result.message}",
            title="Restore",
            border_style="green" if outcome.result.action in ("continue", "none") else "yellow",
        ))
        return True

    async def cmd_reset(self, args: argparse.Namespace) -> bool:
        store = self.build_store()
        sync = self.build_sync(store)
        try:
            fsm = self.build_fsm(store)

            async def clear():
                fsm.reset()
                await fsm.clear_storage()

            await sync.execute_with_lock(clear)
        finally:
            await store.close()
        self.console.print("[green]✅ Workflow reset, shared state cleared[/green]")
        return True

    async def cmd_health(self, args: argparse.Namespace) -> bool:
        store = self.build_store()
        api_client = AccountServiceClient(self.config.api)
        try:
            fsm = self.build_fsm(store)
            await fsm.load_from_storage()
            service = HealthService(fsm, store, api_client, lock_stale_after=self.config.engine.lock_stale_after)
            report = await service.full_health_check()
        finally:
            await api_client.aclose()
            await store.close()

        table = Table(title=f"Health: {report.status} ({report.score})", box=box.ROUNDED)
        table.add_column("Component", style="cyan")
        table.add_column("Status")
        table.add_column("Details")
        for name, component in report.components.items():
            style = STATUS_STYLES.get(component.status, "white")
            details = component.error or ", ".join(f"{k}={v}" for k, v in component.details.items())
            table.add_row(name, f"[{style}]{component.status}[/{style}]", details)
        self.console.print(table)

        for rec in report.recommendations:
            solutions = "\n".join(f"  • {s}" for s in rec.solutions)
            self.console.print(Panel(
                f"{rec.description}\n{solutions}".rstrip(),
                title=f"{rec.title} ({rec.priority})",
                border_style="red" if rec.priority == "high" else "yellow",
            ))
        return report.status != "error"

    async def cmd_accounts(self, args: argparse.Namespace) -> bool:
        cache = RecordCache(self.config.engine.cache_dir)
        if args.export:
            count = cache.export_csv(args.export, status=args.status)
            self.console.print(f"[green]✅ Exported {count} record(s) to {args.export}[/green]")
            return True

        records = cache.list_records(status=args.status, limit=args.limit)
        table = Table(title="Cached accounts", box=box.ROUNDED)
        table.add_column("Email", style="cyan")
        table.add_column("Username")
        table.add_column("Status")
        table.add_column("Code")
        table.add_column("Created")
        for record in records:
            table.add_row(record.email, record.username, record.status.value,
                          record.verification_code or "", record.created_at)
        self.console.print(table)

        stats = cache.get_stats()
        self.console.print(
            f"Total: {stats['total']}  Pending: {stats['pending']}  "
            f"Verified: {stats['verified']}  Failed: {stats['failed']}"
        )
        return True

    async def cmd_start(self, args: argparse.Namespace) -> bool:
        url = args.url or self.config.engine.registration_url
        if not url:
            self.console.print("[red]❌ No registration URL (use --url or engine.registration_url)[/red]")
            return False

        from playwright.async_api import async_playwright

        from .services.automation.playwright_agent import PlaywrightPageAgent

        store = self.build_store()
        fsm = self.build_fsm(store)
        api_client = AccountServiceClient(self.config.api)

        async with async_playwright() as playwright:
            browser = await playwright.chromium.launch(headless=args.headless)
            page_agent = PlaywrightPageAgent(await browser.new_page())
            orchestrator = RegistrationOrchestrator(
                fsm=fsm,
                sync=self.build_sync(store),
                validator=self.build_validator(api_client),
                api_client=api_client,
                record_cache=RecordCache(self.config.engine.cache_dir),
                page_agent=page_agent,
                generator=AccountGenerator(self.config.engine),
                config=self.config,
            )
            try:
                await orchestrator.initialize()
                restored = await orchestrator.restore()
                self.console.print(f"♻️  Restore: {restored}")

                if restored == "continue":
                    # The saved page session belongs to a browser that is gone
                    self.console.print("[yellow]⚠️  Previous page session is gone, starting over[/yellow]")
                    await orchestrator.reset_registration()

                if restored not in ("monitoring", "completed"):
                    await page_agent.open(url)
                    if not await orchestrator.start_registration():
                        self.render_state(fsm)
                        return False

                await orchestrator.wait_for_monitoring()
                self.render_state(fsm)
                return fsm.is_completed()
            finally:
                await orchestrator.shutdown()
                await browser.close()
                await store.close()

    # ---- rendering ----

    def render_state(self, fsm: RegistrationStateMachine):
        metadata = fsm.get_metadata()
        table = Table(box=box.SIMPLE, show_header=False)
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        table.add_row("State", f"{fsm.get_state().value} ({fsm.get_state_text()})")
        table.add_row("Progress", f"{fsm.get_progress()}%")
        table.add_row("Retries", fsm.retry_progress())
        for key in ("email", "username", "session_id", "verification_code", "reason"):
            if metadata.get(key):
                table.add_row(key, str(metadata[key]))

        style = "green" if fsm.is_completed() else "red" if fsm.is_error() else "blue"
        self.console.print(Panel(table, title="Registration", border_style=style))

    async def dispatch(self, args: argparse.Namespace) -> bool:
        handler = getattr(self, f"cmd_{args.command}")
        return await handler(args)

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Parse ``argv``, run the command and return the process exit code"""
        args = self.create_argument_parser().parse_args(argv)
        self.setup_logging(args.verbose)
        try:
            self.load(args)
            success = asyncio.run(self.dispatch(args))
        except RegflowError as e:
            self.console.print(f"[red]❌ {e}[/red]")
            return 1
        except ValueError as e:
            self.console.print(f"[red]❌ Invalid configuration: {e}[/red]")
            return 1
        return 0 if success else 1


def main():
    """CLI主入口点 - CLI main entry point"""
    cli_handler = CLIHandler()
    try:
        sys.exit(cli_handler.run())
    except KeyboardInterrupt:
        cli_handler.console.print("\n[yellow]⚠️  Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
