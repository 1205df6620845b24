"""Agent factory: wires the pool components together and runs periodic jobs."""

import atexit
import logging
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from apscheduler.schedulers.background import BackgroundScheduler

from .config_manager import AgentConfig, ConfigManager
from .drive_monitor import DriveMonitor
from .events import DriveEventBus
from .logging import init_logging
from .mdstat_reader import MdStatReader
from .metadata_store import PoolMetadataStore
from .pool_operations import PoolOperationManager
from .pool_service import PoolService
from .process_manager import ProcessManager
from .reconciler import MetadataReconciler, ReconciliationReport
from .system_executor import SystemCommandExecutor


logger = logging.getLogger(__name__)


class PoolAgent:
    """Holds every component of a running agent."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.executor = SystemCommandExecutor(
            dry_run=config.dry_run,
            use_sudo=config.use_sudo,
            timeout=config.command_timeout_seconds,
        )
        self.event_bus = DriveEventBus()
        self.metadata_store = PoolMetadataStore(config.metadata_path)
        self.drive_monitor = DriveMonitor(
            self.executor,
            by_id_dir=config.disk_by_id_dir,
            excluded_drives=config.excluded_drives,
            settle_delay_seconds=config.watch_settle_delay_seconds,
            poll_interval_seconds=config.drive_poll_interval_seconds,
            event_bus=self.event_bus,
        )
        self.mdstat_reader = MdStatReader(
            self.executor,
            mdstat_path=config.mdstat_path,
            cache_ttl_seconds=config.mdstat_cache_ttl_seconds,
            metadata_store=self.metadata_store,
            drive_monitor=self.drive_monitor,
        )
        self.process_manager = ProcessManager(self.executor)
        self.reconciler = MetadataReconciler(self.metadata_store, self.drive_monitor, self.mdstat_reader)
        self.pool_service = PoolService(
            config, self.executor, self.drive_monitor, self.mdstat_reader,
            self.metadata_store, self.process_manager,
        )
        self.operations = PoolOperationManager(
            self.pool_service,
            max_workers=config.max_concurrent_operations,
            operations_dir=config.operations_dir,
        )
        self.scheduler: Optional[BackgroundScheduler] = None

    def initialize(self) -> bool:
        """Build the drive mapping, recover operations and reconcile metadata."""
        drives_ready = self.drive_monitor.initialize()
        self.operations.recover_interrupted_operations()
        if drives_ready:
            self.reconcile()
        else:
            logger.warning("Skipping startup reconciliation, drive mapping is unavailable")
        return drives_ready

    def reconcile(self) -> ReconciliationReport:
        return self.reconciler.reconcile()

    def start(self) -> None:
        """Initialize and start the watcher and periodic jobs."""
        self.initialize()
        self.drive_monitor.start_watching()

        config = self.config
        self.scheduler = BackgroundScheduler()
        self.scheduler.add_job(
            self._cleanup_operations, trigger="interval",
            minutes=config.operation_cleanup_interval_minutes,
            id='operation_cleanup', replace_existing=True,
        )
        self.scheduler.add_job(
            self._report_stale_operations, trigger="interval",
            minutes=config.operation_cleanup_interval_minutes,
            id='stale_operations', replace_existing=True,
        )
        self.scheduler.add_job(
            self._scheduled_reconcile, trigger="interval",
            hours=config.metadata_validation_interval_hours,
            id='metadata_validation', replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Pool agent started")

    def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.drive_monitor.stop_watching()
        self.operations.shutdown(wait=False)
        logger.info("Pool agent stopped")

    def _cleanup_operations(self) -> None:
        self.operations.cleanup_completed_operations(
            completed_retention=timedelta(days=self.config.completed_operation_retention_days),
            failed_retention=timedelta(days=self.config.failed_operation_retention_days),
        )

    def _report_stale_operations(self) -> None:
        self.operations.find_stale_operations(
            timedelta(hours=self.config.stale_operation_threshold_hours)
        )

    def _scheduled_reconcile(self) -> None:
        try:
            self.drive_monitor.refresh(force=False)
            self.reconcile()
        except Exception:
            logger.exception("Scheduled metadata validation failed")


def create_agent(config_manager: Optional[ConfigManager] = None, start: bool = False,
                 configure_logging: bool = True) -> PoolAgent:
    """
    Build a PoolAgent from configuration.

    Args:
        config_manager: Configuration source; defaults to environment/.env
        start: Start watchers and scheduled jobs immediately
        configure_logging: Install the agent's log handler on the root logger
    """
    load_dotenv()

    config = (config_manager or ConfigManager()).load_config()
    if configure_logging:
        init_logging(config.log_level, config.log_format)

    agent = PoolAgent(config)
    if start:
        agent.start()
        atexit.register(agent.stop)
    return agent
