"""TimeDoctor Sync - scheduler and command-line entry point."""

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .auth import KeychainTokenStore, OAuthClient, TokenRefresher
from .config import Config, setup_logging
from .errors import ValidationError
from .service import TimeDoctorService
from .sync import LocalStore, SyncOrchestrator, SyncRunLedger, TimeDoctorClient
from .sync.models import EntityType
from .sync.retry import RetryConfig

logger = logging.getLogger(__name__)

TOKEN_CHECK_INTERVAL_SECONDS = 3600


def build_service(config: Config) -> TimeDoctorService:
    """Wire the refresher, client, store, ledger and orchestrator together."""
    retry_config = RetryConfig.from_token_settings(config.token)
    oauth = OAuthClient(
        client_id=config.timedoctor.client_id,
        client_secret=config.timedoctor.client_secret,
        redirect_uri=config.timedoctor.redirect_uri,
        auth_url=config.timedoctor.auth_url,
        token_url=config.timedoctor.token_url,
        timeout=config.timedoctor.timeout,
    )
    refresher = TokenRefresher(
        store=KeychainTokenStore(),
        oauth=oauth,
        expiry_buffer_seconds=config.token.expiry_buffer_seconds,
        lifespan_seconds=config.token.lifespan_seconds,
        retry_config=retry_config,
    )
    client = TimeDoctorClient(
        credentials=refresher,
        api_url=config.timedoctor.api_url,
        timeout=config.timedoctor.timeout,
        retry_config=retry_config,
    )
    ledger = SyncRunLedger()
    orchestrator = SyncOrchestrator(
        client=client,
        store=LocalStore(),
        ledger=ledger,
        settings=config.sync,
    )
    return TimeDoctorService(refresher, orchestrator, ledger)


class SyncCoordinator:
    """Owns the scheduler: periodic token checks and periodic syncs."""

    def __init__(self, config: Config, service: TimeDoctorService) -> None:
        self.config = config
        self.service = service
        self.scheduler = BackgroundScheduler()
        self._sync_lock = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None

    def start(self) -> None:
        """Check the token, then start the periodic jobs."""
        self.service.check_token()

        self.scheduler.add_job(
            self.service.check_token,
            trigger=IntervalTrigger(seconds=TOKEN_CHECK_INTERVAL_SECONDS),
            id="token_check_job",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._do_sync,
            trigger=IntervalTrigger(seconds=self.config.sync.interval_seconds),
            id="sync_job",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Sync loop started (interval: {self.config.sync.interval_seconds}s)"
        )

    def stop(self) -> None:
        """Cancel any running sync and shut down the scheduler."""
        self.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def reschedule(self, interval_seconds: int) -> None:
        """Change the sync interval on the fly."""
        if self.scheduler.running:
            self.scheduler.reschedule_job(
                "sync_job",
                trigger=IntervalTrigger(seconds=interval_seconds),
            )

    def trigger_sync(
        self,
        entity_type: Optional[EntityType] = None,
        date_range: Optional[tuple[date, date]] = None,
        job_id: str = "manual_sync",
    ) -> None:
        """Schedule a one-off sync (admin "Sync now")."""
        if self.scheduler.running:
            self.scheduler.add_job(
                self._do_sync,
                kwargs={"entity_type": entity_type, "date_range": date_range},
                id=job_id,
                replace_existing=True,
            )

    def cancel(self) -> None:
        """Ask the running sync to stop at the next window boundary."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    def _do_sync(
        self,
        entity_type: Optional[EntityType] = None,
        date_range: Optional[tuple[date, date]] = None,
    ) -> None:
        """Perform one sync run unless another is still going."""
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Previous sync still running, skipping this cycle")
            return
        try:
            self._cancel_event = threading.Event()
            self.service.trigger_sync(
                entity_type=entity_type,
                date_range=date_range,
                cancel_event=self._cancel_event,
            )
            report = self.service.last_report
            if report is not None and report.error_summary:
                logger.warning(f"Sync {report.state.value}: {report.error_summary}")
        except ValidationError as e:
            logger.error(f"Sync rejected: {e}")
        except Exception as e:
            logger.exception(f"Sync error: {e}")
        finally:
            self._cancel_event = None
            self._sync_lock.release()


class SingleInstanceLock:
    """File-based single-instance lock using advisory locking.

    Two schedulers sharing one credential would race each other's refreshes.
    """

    def __init__(self):
        self._file = None
        self._path = os.path.join(Config.get_config_dir(), ".tdsync.lock")

    def acquire(self) -> bool:
        """Try to acquire the lock. Returns True on success."""
        os.makedirs(os.path.dirname(self._path), exist_ok=True)
        self._file = open(self._path, "a+")  # noqa: SIM115
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._file.seek(0)
            self._file.truncate(0)
            self._file.write(str(os.getpid()))
            self._file.flush()
            return True
        except OSError:
            self._file.close()
            self._file = None
            return False

    def release(self) -> None:
        """Release the lock and clean up."""
        if self._file:
            try:
                if sys.platform == "win32":
                    import msvcrt
                    try:
                        msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
                    except OSError:
                        pass
                else:
                    import fcntl
                    fcntl.flock(self._file, fcntl.LOCK_UN)
                self._file.close()
                os.unlink(self._path)
            except OSError:
                pass
            self._file = None


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tdsync", description="TimeDoctor sync service")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the scheduler until interrupted")

    sync = sub.add_parser("sync", help="Run one sync now")
    sync.add_argument(
        "--entity", choices=[e.value for e in EntityType], help="Sync a single entity type"
    )
    sync.add_argument("--start", type=_parse_date, help="Worklog start date (YYYY-MM-DD)")
    sync.add_argument("--end", type=_parse_date, help="Worklog end date (YYYY-MM-DD)")

    sub.add_parser("status", help="Show connection status and recent runs")
    sub.add_parser("authorize-url", help="Print the TimeDoctor consent URL")

    connect = sub.add_parser("connect", help="Exchange an authorization code")
    connect.add_argument("code")

    sub.add_parser("disconnect", help="Forget the stored token")
    return parser


def _run_scheduler(config: Config, service: TimeDoctorService) -> int:
    lock = SingleInstanceLock()
    if not lock.acquire():
        print("TimeDoctor Sync is already running.")
        return 0

    stop_event = threading.Event()

    def _signal_handler(signum, frame) -> None:
        logger.info(f"Received signal {signum}")
        stop_event.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    coordinator = SyncCoordinator(config, service)
    try:
        coordinator.start()
        coordinator.trigger_sync(job_id="initial_sync")
        stop_event.wait()
    finally:
        coordinator.stop()
        lock.release()
        logger.info("Shutdown complete")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = Config.load()
    setup_logging(args.debug or config.debug_mode)
    service = build_service(config)

    if args.command == "run":
        return _run_scheduler(config, service)

    if args.command == "sync":
        entity = EntityType(args.entity) if args.entity else None
        date_range = None
        if args.start or args.end:
            end = args.end or date.today()
            date_range = (args.start or end, end)
        try:
            service.trigger_sync(entity_type=entity, date_range=date_range)
        except ValidationError as e:
            print(f"Error: {e}")
            return 2
        report = service.last_report
        print(f"Sync {report.state.value}: {report.records_processed} records")
        if report.error_summary:
            print(report.error_summary)
        return 0 if report.state.value == "completed" else 1

    if args.command == "status":
        status = service.get_connection_status()
        print(status.message)
        if status.expires_at:
            print(f"Token expires at {status.expires_at.isoformat()}")
        for run in service.ledger.recent_runs(limit=5):
            print(
                f"#{run.run_id} {run.entity_type} {run.started_at:%Y-%m-%d %H:%M} "
                f"{run.status or 'running'} ({run.records_processed} records)"
            )
        return 0

    if args.command == "authorize-url":
        print(service.authorize_url())
        return 0

    if args.command == "connect":
        status = service.connect(args.code)
        print(status.message)
        return 0 if status.connected else 1

    if args.command == "disconnect":
        service.disconnect()
        print("Disconnected from TimeDoctor")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
