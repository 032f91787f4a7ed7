"""Resumable paginator: one adapter page per invocation."""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from revops_app.models import SyncRun
from revops_app.sync.adapters import SourceAdapter
from revops_app.sync.contracts import FetchedPage
from revops_app.sync.metrics import record_page

from .checkpoint import CheckpointStore

logger = logging.getLogger(__name__)


class ResumablePaginator:
    """Resolve the cursor for a run and fetch exactly one page from its adapter."""

    def __init__(self, adapter: SourceAdapter, *, checkpoints: CheckpointStore | None = None) -> None:
        self.adapter = adapter
        self.checkpoints = checkpoints or CheckpointStore()

    def resolve_cursor(
        self,
        run: SyncRun,
        requested: Mapping[str, Any] | None = None,
    ) -> Mapping[str, Any] | None:
        """An explicit cursor wins, then the run's checkpoint, then the adapter's first page."""

        if requested is not None:
            return dict(requested)
        stored = self.checkpoints.resume_cursor(run)
        if stored is not None:
            return stored
        return self.adapter.initial_cursor()

    def fetch(self, cursor: Mapping[str, Any] | None, page_size: int) -> FetchedPage:
        started = time.perf_counter()
        source = self.adapter.name
        try:
            page = self.adapter.fetch_page(cursor, page_size)
        except Exception:
            record_page(source=source, outcome="error", duration_seconds=time.perf_counter() - started)
            raise

        # has_more without a usable cursor would replay the same page forever.
        if page.has_more and page.next_cursor is None:
            logger.warning(
                "Adapter %s reported more pages without a cursor; treating page as final",
                source,
                extra={"sync_source": source},
            )
            page = FetchedPage(
                records=page.records,
                next_cursor=cursor,
                has_more=False,
                raw_count=page.raw_count,
                skipped=page.skipped,
            )

        record_page(
            source=source,
            outcome="more" if page.has_more else "last",
            duration_seconds=time.perf_counter() - started,
        )
        logger.info(
            "Fetched %d record(s) from %s (has_more=%s)",
            page.raw_count,
            source,
            page.has_more,
            extra={"sync_source": source, "sync_page_records": page.raw_count, "sync_has_more": page.has_more},
        )
        return page
