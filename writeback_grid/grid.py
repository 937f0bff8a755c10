"""Grid session: the pipeline from engine pages to annotated rows and back."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Mapping, Sequence

import httpx

from .annotations import AnnotationStore
from .config import Config
from .errors import CONFIG_ERROR, WritebackGridError
from .logging import get_logger
from .merge import MergeEngine
from .metrics import record_discard, record_operation
from .mirror import EditMirror
from .models import BatchResult, ColumnDef, Identity, PageInfo, Row, TableSnapshot
from .pagination import PageMatrix, PageSource, PageState, PageStatus
from .presence import EditPresenceEntry, EditPresenceTracker
from .projection import ColumnSpec, RowProjector
from .writeback import EditBuffer, WriteCoordinator

LOGGER = get_logger(__name__)

DEFAULT_OVERLAY_LABELS = {"status": "Model Feedback", "comments": "Comments"}
SAVE_IN_PROGRESS_MESSAGE = "save already in progress"


@dataclass(frozen=True, slots=True)
class Layout:
    """What the host hands over on every re-render."""

    layout_id: str
    total_rows: int
    dimensions: Sequence[ColumnSpec]
    measures: Sequence[ColumnSpec]
    first_page: PageMatrix = ()
    selection_in_progress: bool = False
    page_size: int | None = None
    overlay_labels: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_hypercube(cls, payload: Mapping[str, Any]) -> "Layout":
        """Build a layout from an engine hypercube layout object."""

        cube = payload.get("qHyperCube") or {}
        custom = payload.get("customLabels") or {}
        dimensions = [
            _column_from_info(info, _custom_label(custom, "dimensions", index))
            for index, info in enumerate(cube.get("qDimensionInfo") or [])
        ]
        measures = [
            _column_from_info(info, _custom_label(custom, "measures", index))
            for index, info in enumerate(cube.get("qMeasureInfo") or [])
        ]
        pages = cube.get("qDataPages") or []
        first_page = pages[0].get("qMatrix", []) if pages else []
        return cls(
            layout_id=str((payload.get("qInfo") or {}).get("qId") or ""),
            total_rows=int((cube.get("qSize") or {}).get("qcy") or 0),
            dimensions=dimensions,
            measures=measures,
            first_page=first_page,
            selection_in_progress=bool((payload.get("qSelectionInfo") or {}).get("qInSelections")),
            overlay_labels=dict(payload.get("columnLabels") or {}),
        )


def _custom_label(custom: Mapping[str, Any], group: str, index: int) -> str | None:
    labels = custom.get(group) or []
    if index < len(labels) and labels[index]:
        return str(labels[index])
    return None


def _column_from_info(info: Mapping[str, Any], custom_label: str | None) -> ColumnDef:
    title = str(info.get("qFallbackTitle") or "")
    return ColumnDef(
        id=title,
        label=custom_label or info.get("qLabel") or info.get("qLabelExpression") or title,
        description=info.get("qDesc") or None,
        sort_indicator=str(info.get("qSortIndicator") or ""),
    )


@dataclass(frozen=True, slots=True)
class ViewToken:
    page: int
    sequence: int
    generation: int


class GridSession:
    """Wires page state, projection, merging, edits and saves for one grid.

    All background work (deferred merges, auto-refresh, post-save refresh)
    runs as tasks owned by the session and is cancelled by :meth:`aclose`.
    """

    def __init__(
        self,
        config: Config,
        source: PageSource,
        store: AnnotationStore,
        identity: Identity,
        *,
        dataset_id: str | None = None,
        mirror: EditMirror | None = None,
        coordinator: WriteCoordinator | None = None,
        merge_engine: MergeEngine | None = None,
        owns_store: bool = False,
    ) -> None:
        resolved_dataset = dataset_id or config.dataset_id
        if not resolved_dataset:
            raise WritebackGridError(CONFIG_ERROR, "dataset_id must be configured")
        self.config = config
        self.dataset_id = resolved_dataset
        self.identity = identity
        self._store = store
        self._owns_store = owns_store
        self._mirror = mirror
        self._merge = merge_engine or MergeEngine()
        self._coordinator = coordinator or WriteCoordinator.from_config(config, store, dataset_id=resolved_dataset)
        self._page_state = PageState(
            source,
            page_size=config.page_size,
            page_change_delay=config.page_change_delay.total_seconds(),
        )
        self.presence = EditPresenceTracker(identity, ttl=config.edit_presence_ttl.total_seconds())
        self.edits = mirror.load() if mirror is not None else EditBuffer()

        self._projector: RowProjector | None = None
        self._layout_id: str | None = None
        self._was_in_selection = False
        self._rows: list[Row] = []
        self._generation = 0
        self._navigations = 0
        self._saving = False
        self._closed = False
        self._pending_merge: asyncio.Task[bool] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(
        cls,
        config: Config,
        source: PageSource,
        identity: Identity,
        *,
        dataset_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "GridSession":
        store = AnnotationStore.from_config(config, client=client)
        return cls(
            config,
            source,
            store,
            identity,
            dataset_id=dataset_id,
            mirror=EditMirror.for_state_dir(config.state_dir),
            owns_store=True,
        )

    async def __aenter__(self) -> "GridSession":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    @property
    def rows(self) -> list[Row]:
        return list(self._rows)

    @property
    def page_info(self) -> PageInfo:
        return self._page_state.page_info

    @property
    def page_state(self) -> PageState:
        return self._page_state

    @property
    def is_saving(self) -> bool:
        return self._saving

    def snapshot(self) -> TableSnapshot:
        headers = self._projector.headers() if self._projector is not None else []
        return TableSnapshot(
            headers=headers,
            rows=list(self._rows),
            page_info=self._page_state.page_info,
            edits=self.edits.to_changes(),
            dataset_id=self.dataset_id,
        )

    def _view_token(self) -> ViewToken:
        return ViewToken(
            page=self._page_state.current_page,
            sequence=self._page_state.sequence,
            generation=self._generation,
        )

    def _publish(self, rows: list[Row]) -> ViewToken:
        self._rows = rows
        self._generation += 1
        return self._view_token()

    # ------------------------------------------------------------------
    # Layout and navigation
    # ------------------------------------------------------------------
    async def apply_layout(self, layout: Layout) -> None:
        if self._closed:
            return
        if self._navigations:
            LOGGER.debug("grid.layout.skipped", extra={"context": {"layout_id": layout.layout_id}})
            return

        if self._was_in_selection and not layout.selection_in_progress:
            LOGGER.info("grid.selection.cancelled", extra={"context": {"layout_id": layout.layout_id}})
            self._page_state.on_selection_cancelled()
        self._was_in_selection = layout.selection_in_progress

        dataset_changed = layout.layout_id != self._layout_id
        if self._page_state.should_reset_to_page_one(
            dataset_changed,
            layout.selection_in_progress,
            total_rows=layout.total_rows,
        ):
            LOGGER.info(
                "grid.page.reset",
                extra={"context": {"layout_id": layout.layout_id, "total_rows": layout.total_rows}},
            )
            self._page_state.reset()
        self._layout_id = layout.layout_id
        self._page_state.initialize(layout.total_rows, layout.page_size)
        self._projector = RowProjector(
            layout.dimensions,
            layout.measures,
            self._overlay_columns(layout.overlay_labels),
            key_column=self.config.key_column,
        )

        page = self._page_state.current_page
        matrix: PageMatrix = layout.first_page
        if page != 1:
            load = await self._page_state.request_page(page, user_initiated=False)
            if load is None and self._page_state.status is not PageStatus.ERROR:
                # a newer navigation owns the view now
                return
            if load is None or not load.matrix:
                LOGGER.info("grid.page.fallback", extra={"context": {"page": page}})
                self._page_state.reset()
                page = 1
            else:
                matrix = load.matrix

        token = self._publish(self._projector.project(matrix, page=page))
        await self._merge_into(token)
        self._ensure_auto_refresh()

    async def change_page(self, page: int) -> PageInfo | None:
        """Navigate to ``page``; engine rows show immediately, annotations follow."""

        if self._closed:
            return None
        if self._projector is None:
            LOGGER.warning("grid.page.no_layout", extra={"context": {"page": page}})
            return None

        self._navigations += 1
        try:
            load = await self._page_state.request_page(page)
        finally:
            self._navigations -= 1
        if load is None:
            return None

        token = self._publish(self._projector.project(load.matrix, page=load.page))
        self._schedule_merge(token)
        return load.page_info

    async def next_page(self) -> PageInfo | None:
        return await self.change_page(self._page_state.current_page + 1)

    async def previous_page(self) -> PageInfo | None:
        return await self.change_page(self._page_state.current_page - 1)

    async def first_page(self) -> PageInfo | None:
        return await self.change_page(1)

    async def last_page(self) -> PageInfo | None:
        return await self.change_page(self._page_state.page_info.total_pages)

    def _overlay_columns(self, labels: Mapping[str, str]) -> list[ColumnDef]:
        return [
            ColumnDef(id=overlay_id, label=labels.get(overlay_id) or DEFAULT_OVERLAY_LABELS.get(overlay_id))
            for overlay_id in self.config.overlay_ids
        ]

    # ------------------------------------------------------------------
    # Annotation merges
    # ------------------------------------------------------------------
    async def refresh_annotations(self) -> bool:
        """Re-read annotations and merge them onto the rows currently shown."""

        if self._closed:
            return False
        return await self._merge_into(self._view_token())

    async def _merge_into(self, token: ViewToken) -> bool:
        records = await self._store.fetch_all(self.dataset_id)
        if token != self._view_token():
            record_discard("merge")
            LOGGER.debug(
                "merge.discarded",
                extra={
                    "context": {
                        "page": token.page,
                        "generation": token.generation,
                        "current_page": self._page_state.current_page,
                    }
                },
            )
            return False
        self._rows = self._merge.merge(self._rows, records)
        record_operation("merge")
        return True

    def _schedule_merge(self, token: ViewToken) -> None:
        if self._pending_merge is not None and not self._pending_merge.done():
            self._pending_merge.cancel()
        task = self._spawn(self._deferred_merge(token))
        self._pending_merge = task

    async def _deferred_merge(self, token: ViewToken) -> bool:
        await asyncio.sleep(self.config.merge_delay.total_seconds())
        return await self._merge_into(token)

    def _ensure_auto_refresh(self) -> None:
        interval = self.config.auto_refresh_interval.total_seconds()
        if interval <= 0 or not self._rows or self._refresh_task is not None or self._closed:
            return
        self._refresh_task = asyncio.create_task(self._auto_refresh(interval))

    async def _auto_refresh(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_annotations()
            except Exception as exc:
                LOGGER.warning("grid.refresh.failed", extra={"context": {"error": str(exc)}})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def settle(self) -> None:
        """Wait for deferred merges and post-save refreshes to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Editing and saving
    # ------------------------------------------------------------------
    def edit(self, key: str, overlay_id: str, value: str) -> list[EditPresenceEntry]:
        """Buffer an overlay edit; returns other live editors of the same key."""

        if overlay_id not in self.config.overlay_fields:
            raise ValueError(f"Unknown overlay column: {overlay_id}")
        for row in self._rows:
            if row.key == key and row.synthetic_key:
                raise ValueError(f"Row {key} has no natural key and cannot be annotated")

        self.edits.set(key, overlay_id, value)
        self._persist_edits()
        self.presence.track_start(key, overlay_id)
        others = self.presence.others_editing(key)
        if others:
            LOGGER.info(
                "grid.edit.concurrent",
                extra={"context": {"key": key, "editors": sorted({entry.user for entry in others})}},
            )
        return others

    def end_edit(self, key: str, overlay_id: str) -> None:
        self.presence.track_end(key, overlay_id)

    async def save(self) -> BatchResult:
        if self._saving:
            return BatchResult(success=False, message=SAVE_IN_PROGRESS_MESSAGE, kind="warning")
        self._saving = True
        try:
            result = await self._coordinator.save(self.edits, self._rows, self.identity)
        finally:
            self._saving = False

        if result.success:
            for outcome in result.outcomes:
                self.edits.discard_saved(outcome.key, outcome.saved)
            self._persist_edits()
            if not self._closed:
                self._spawn(self._post_save_refresh())
        return result

    async def _post_save_refresh(self) -> None:
        await asyncio.sleep(self.config.post_save_refresh_delay.total_seconds())
        await self.refresh_annotations()

    def _persist_edits(self) -> None:
        if self._mirror is None:
            return
        try:
            if len(self.edits):
                self._mirror.save(self.edits, self.identity.user)
            else:
                self._mirror.clear()
        except OSError as exc:
            LOGGER.warning("mirror.write.failed", extra={"context": {"error": str(exc)}})

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        pending: list[asyncio.Task[Any]] = list(self._background)
        if self._refresh_task is not None:
            pending.append(self._refresh_task)
            self._refresh_task = None
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._page_state.close()
        self.presence.clear()
        if self._owns_store:
            await self._store.aclose()
