"""Batch scheduler: evaluates every candidate invoice once per trigger."""

from __future__ import annotations

import logging
import signal
import threading
import time

from backend.core.config import settings
from backend.core.observability import set_trace_id
from backend.core.observability.metrics import record_batch_duration

from .clock import Clock, system_clock
from .config import ChaseConfig
from .dto import BatchResult
from .engine import ChaseEngine
from .errors import ChaseDeliveryError, StoreUnavailableError
from .store import AppConfigStore, InvoiceStore


class BatchScheduler:
    """Runs the chase engine over all candidates with default options."""

    def __init__(
        self,
        invoices: InvoiceStore,
        app_config: AppConfigStore,
        engine: ChaseEngine,
        base_config: ChaseConfig | None = None,
        clock: Clock = system_clock,
        batch_limit: int | None = None,
    ):
        self.invoices = invoices
        self.app_config = app_config
        self.engine = engine
        self.base_config = base_config or ChaseConfig.from_settings()
        self.clock = clock
        self.batch_limit = batch_limit
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()

    def load_config(self) -> ChaseConfig:
        return self.app_config.load_config(base=self.base_config)

    def run_batch(self) -> BatchResult:
        """Evaluate every candidate once.

        One invoice's failure never stops the loop; it is logged and counted.
        A store outage aborts the batch and propagates.

        Returns:
            BatchResult with sent/candidate/failure counts

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        set_trace_id()
        start_time = time.time()
        result = BatchResult()

        config = self.load_config()
        candidates = self.invoices.list_candidates(self.clock().date(), limit=self.batch_limit)
        result.candidates = len(candidates)

        for invoice in candidates:
            try:
                outcome = self.engine.evaluate(invoice, config)
            except StoreUnavailableError:
                raise
            except ChaseDeliveryError as e:
                result.add_error(f"invoice {invoice.id}: {e}")
                continue
            except Exception as e:
                self.logger.exception(
                    "chase_evaluation_error", extra={"invoice_id": invoice.id}
                )
                result.add_error(f"invoice {invoice.id}: unexpected error: {e}")
                continue

            if outcome.sent:
                result.sent += 1
            elif outcome.conflict:
                result.conflicts += 1
            else:
                result.skipped += 1

        result.processing_time_seconds = time.time() - start_time
        record_batch_duration(result.processing_time_seconds * 1000.0)
        self.logger.info(
            "chase_batch_complete",
            extra={
                "candidates": result.candidates,
                "sent": result.sent,
                "failed": result.failed,
                "skipped": result.skipped,
                "conflicts": result.conflicts,
                "duration_ms": result.processing_time_seconds * 1000.0,
            },
        )
        return result

    def stop(self) -> None:
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):  # noqa: ARG001
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def run_forever(
        self,
        service_mode: bool = True,
        poll_interval_s: float | None = None,
        max_cycles: int | None = None,
    ) -> int:
        """Run batches on a fixed interval until stopped.

        - service_mode=True: loop, waiting ``poll_interval_s`` between batches.
        - service_mode=False (timer mode): run a single batch and return.

        Returns recommended exit code: 0 on normal stop, 1 if the last batch
        hit a store outage.
        """
        poll = settings.CHASE_POLL_INTERVAL_S if poll_interval_s is None else poll_interval_s
        exit_code = 0
        cycles = 0
        while not self._stop_event.is_set():
            try:
                self.run_batch()
                exit_code = 0
            except StoreUnavailableError as e:
                self.logger.error("chase_batch_aborted", extra={"error": str(e)})
                exit_code = 1

            cycles += 1
            if not service_mode or (max_cycles is not None and cycles >= max_cycles):
                break
            self._stop_event.wait(max(0.0, poll))

        return exit_code
