"""
Command Line Interface Module
Runs one batch of registration items from a CSV/JSON file against the target
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table

from .config import EngineConfig, load_config
from .exceptions import AutomationError, ConfigurationError, InvalidItemError
from .models.item import BatchReport, Item, ItemOutcome, ItemResult
from .services.data_service import DataService
from .services.engine import (
    AdapterFactory, BasicNameResolver, BatchOrchestrator, EngineServices, TargetAdapter
)
from .services.persistence_service import ReportExporter, StateStore

EXIT_OK = 0
EXIT_ITEMS_FAILED = 1
EXIT_CONTRACT_VIOLATION = 2

OUTCOME_STYLES = {
    ItemOutcome.SUCCESS: "[green]✅ Registered[/green]",
    ItemOutcome.DUPLICATE: "[yellow]⏭️ Duplicate[/yellow]",
    ItemOutcome.ERROR: "[red]❌ Failed[/red]",
}


def exit_code_for(report: BatchReport) -> int:
    """0 when nothing failed, 1 otherwise"""
    return EXIT_OK if report.failed == 0 else EXIT_ITEMS_FAILED


class CLIHandler:
    """CLI Handler Class"""

    def __init__(self, console: Optional[Console] = None, adapter: Optional[TargetAdapter] = None):
        self.console = console or Console()
        self._adapter = adapter
        self.orchestrator: Optional[BatchOrchestrator] = None

    def create_argument_parser(self) -> argparse.ArgumentParser:
        """Create command line argument parser"""
        parser = argparse.ArgumentParser(
            description="Adaptive batch registration engine",
            prog="main.py",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        parser.add_argument(
            "--items",
            type=str,
            required=True,
            help="CSV (label column + attribute columns) or JSON file with the items to register"
        )

        parser.add_argument(
            "--config",
            type=str,
            default=None,
            help="JSON engine configuration (budgets, backoff, controls, form steps)"
        )

        parser.add_argument(
            "--backend",
            type=str,
            choices=["playwright", "selenium"],
            default="playwright",
            help="Automation backend to use (default: playwright)"
        )

        parser.add_argument(
            "--base-url",
            type=str,
            default="http://localhost:4200/",
            help="URL of the registration page of the target system"
        )

        parser.add_argument(
            "--state-file",
            type=str,
            default=None,
            help="JSON file with learned locator strategies, loaded before and saved after the batch"
        )

        parser.add_argument(
            "--report-csv",
            type=str,
            default=None,
            help="Append per-item results to this CSV file"
        )

        parser.add_argument(
            "--json",
            action="store_true",
            help="Print the batch report as JSON instead of a table"
        )

        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Enable verbose logging output"
        )

        parser.add_argument(
            "--headless",
            action="store_true",
            help="Run the browser without a window"
        )

        return parser

    def setup_logging(self, verbose: bool = False):
        """Route engine logging through rich"""
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
            force=True,
        )

    def create_adapter(self, args: argparse.Namespace) -> TargetAdapter:
        if self._adapter is not None:
            return self._adapter
        return AdapterFactory.create_adapter(args.backend, args.base_url, headless=args.headless)

    async def run_batch(self, args: argparse.Namespace, items: List[Item], config: EngineConfig) -> BatchReport:
        """Wire the engine, run the batch and persist what was learned"""
        adapter = self.create_adapter(args)
        services = EngineServices.build(config, adapter.probe)

        state_store = StateStore(args.state_file) if args.state_file else None
        if state_store:
            services.restore(state_store.load())

        self.orchestrator = BatchOrchestrator(adapter, BasicNameResolver(), services, config)
        self._install_stop_handler()

        try:
            if args.json:
                report = await self.orchestrator.run_batch(items)
            else:
                report = await self._run_with_progress(items)
        finally:
            self._remove_stop_handler()

        if state_store:
            state_store.save(services.snapshot())
        if args.report_csv:
            ReportExporter(args.report_csv).export(report, adapter.get_adapter_name())
        return report

    async def _run_with_progress(self, items: List[Item]) -> BatchReport:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("({task.completed}/{task.total})"),
            TimeRemainingColumn(),
            console=self.console
        ) as progress:
            overall_task = progress.add_task("🚀 Batch progress", total=len(items))

            def on_item_start(item: Item, index: int):
                progress.update(overall_task, description=f"🔄 Processing: {item.label}")

            def on_item_complete(result: ItemResult):
                progress.update(overall_task, advance=1)

            self.orchestrator.set_callbacks(on_item_start=on_item_start, on_item_complete=on_item_complete)
            return await self.orchestrator.run_batch(items)

    def _install_stop_handler(self):
        """Ctrl-C asks the orchestrator to stop after the current item"""
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, self.orchestrator.stop)
        except (NotImplementedError, RuntimeError):
            pass

    def _remove_stop_handler(self):
        try:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    def show_results(self, report: BatchReport):
        """Render the batch report"""
        results_table = Table(title="📋 Results", box=box.ROUNDED)
        results_table.add_column("#", justify="right", style="dim")
        results_table.add_column("Item", style="cyan")
        results_table.add_column("Outcome", justify="center")
        results_table.add_column("Attempts", justify="right")
        results_table.add_column("Time", style="magenta")
        results_table.add_column("Diagnostic", style="dim")

        for result in report.results:
            results_table.add_row(
                str(result.index + 1),
                result.item.label,
                OUTCOME_STYLES[result.outcome],
                str(result.attempts),
                f"{result.elapsed_ms / 1000:.1f}s",
                result.diagnostic or "-"
            )

        lines = [
            f"  ├─ ✅ Succeeded: {report.succeeded}",
            f"  ├─ ⏭️ Skipped (duplicates): {report.skipped}",
            f"  ├─ ❌ Failed: {report.failed}",
            f"  ├─ ⏳ Pending: {report.pending}",
            f"  └─ ⏱️ Duration: {report.duration_ms / 1000:.1f}s",
        ]
        if report.terminated_reason:
            lines.append(f"\n⚠️ Batch ended early: {report.terminated_reason}")
            if report.resume_from is not None:
                lines.append(f"   Resume from item {report.resume_from + 1}")

        style = "green" if report.failed == 0 and report.terminated_reason is None else "yellow"
        self.console.print()
        self.console.print(Panel(
            f"📊 Batch {report.job_id}: {report.total} items\n" + "\n".join(lines),
            title="🎉 Batch complete",
            box=box.DOUBLE,
            style=style
        ))
        self.console.print(results_table)

    def execute(self, argv: Optional[List[str]] = None) -> int:
        """Parse arguments, run the batch and return the process exit code"""
        parser = self.create_argument_parser()
        args = parser.parse_args(argv)
        self.setup_logging(args.verbose)

        try:
            config = load_config(args.config)
            items = DataService().load_items(args.items)
        except (ConfigurationError, InvalidItemError, FileNotFoundError) as e:
            self.console.print(f"[red]❌ Error: {e}[/red]")
            return EXIT_CONTRACT_VIOLATION

        if not items:
            self.console.print("[yellow]⚠️ No items to process[/yellow]")
            return EXIT_OK

        try:
            report = asyncio.run(self.run_batch(args, items, config))
        except InvalidItemError as e:
            self.console.print(f"[red]❌ Error: {e}[/red]")
            return EXIT_CONTRACT_VIOLATION
        except AutomationError as e:
            self.console.print(f"[red]❌ Error initializing backend {args.backend}: {e}[/red]")
            return EXIT_ITEMS_FAILED

        if args.json:
            print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
        else:
            self.show_results(report)
        return exit_code_for(report)


def main(argv: Optional[List[str]] = None):
    """CLI main entry point"""
    cli_handler = CLIHandler()

    try:
        sys.exit(cli_handler.execute(argv))
    except KeyboardInterrupt:
        print("\n⚠️  Operation cancelled by user")
        sys.exit(EXIT_ITEMS_FAILED)


if __name__ == "__main__":
    main()
