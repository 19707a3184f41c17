"""
Image pull progress tracking.

`docker pull` reports progress per layer, and what it reports depends on how
it is run: JSON records with byte-level detail from the API stream, or
human-readable lines ("8cc6894b165e: Downloading  12.3MB/45.6MB") from the
CLI. Some layers never report byte totals at all (cache hits, tiny layers),
and layers finish in any order.

PullProgress folds all of that into one percentage and one status line:

    progress = PullProgress()
    subscription = progress.subscribe(lambda pct, status: print(pct, status))
    for line in stream:
        progress.process_line(line)
    subscription.cancel()

A percentage of -1 means "status text only, keep the previous percentage".
"""

import json
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

STATUS_ONLY = -1.0

# Download and extract share of a layer's weight in byte-based scoring
DOWNLOAD_WEIGHT = 60.0
EXTRACT_WEIGHT = 40.0

# Switch to byte-based scoring once this many layers report real byte totals,
# or once they make up more than this share of the layers that need work.
# Both thresholds are empirical.
BYTE_MODE_MIN_LAYERS = 2
BYTE_MODE_LAYER_SHARE = 0.3

SIZE_MULTIPLIERS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}

LAYER_PREFIX_PATTERN = re.compile(r"^([0-9a-f]{12}):\s*(.*)$")
SIZE_PATTERN = re.compile(
    r"(\d+(?:\.\d+)?)\s*([kKMGT]?B)\s*/\s*(\d+(?:\.\d+)?)\s*([kKMGT]?B)"
)


class LayerStatus(str, Enum):
    """Per-layer states as docker reports them."""

    PREPARING = "Preparing"
    WAITING = "Waiting"
    DOWNLOADING = "Downloading"
    VERIFYING = "Verifying Checksum"
    DOWNLOAD_COMPLETE = "Download complete"
    EXTRACTING = "Extracting"
    PULL_COMPLETE = "Pull complete"
    ALREADY_EXISTS = "Already exists"


# Phrases found in plain-text output, checked in this order
LAYER_PHRASES = [
    ("pulling fs layer", LayerStatus.PREPARING),
    ("waiting", LayerStatus.WAITING),
    ("already exists", LayerStatus.ALREADY_EXISTS),
    ("pull complete", LayerStatus.PULL_COMPLETE),
    ("download complete", LayerStatus.DOWNLOAD_COMPLETE),
    ("verifying checksum", LayerStatus.VERIFYING),
]

# JSON status strings that map onto a different LayerStatus
STRUCTURED_STATUS_ALIASES = {
    "Pulling fs layer": LayerStatus.PREPARING,
}

COMPLETED_STATUSES = (LayerStatus.PULL_COMPLETE, LayerStatus.DOWNLOAD_COMPLETE)
PREPARING_STATUSES = (LayerStatus.PREPARING, LayerStatus.WAITING)


class PullLineKind(str, Enum):
    """What a single line of pull output turned out to be."""

    STRUCTURED = "structured"      # JSON progress record
    STATUS = "status"              # global status text, no layer
    LAYER_PHRASE = "layer_phrase"  # "<id>: Pull complete" and friends
    LAYER_SIZE = "layer_size"      # "<id>: Downloading 1.2MB/3.4MB"
    UNRECOGNIZED = "unrecognized"


@dataclass
class PullLine:
    """A classified line of pull output."""

    kind: PullLineKind
    raw: str
    layer_id: Optional[str] = None
    status: str = ""
    current: int = 0
    total: int = 0
    error: Optional[str] = None
    starts_download: bool = False


@dataclass
class LayerProgress:
    """Progress for a single layer within one pull."""

    id: str
    status: str = ""
    download_current: int = 0
    download_total: int = 0
    extract_current: int = 0
    extract_total: int = 0

    @property
    def is_cached(self) -> bool:
        return self.status == LayerStatus.ALREADY_EXISTS

    @property
    def is_complete(self) -> bool:
        return self.status in COMPLETED_STATUSES

    @property
    def has_meaningful_download(self) -> bool:
        # Totals of 0 or 1 are placeholders, not real sizes
        return self.download_total > 1

    @property
    def has_meaningful_extract(self) -> bool:
        return self.extract_total > 1

    @property
    def has_meaningful_bytes(self) -> bool:
        return self.has_meaningful_download or self.has_meaningful_extract


@dataclass
class ProgressSnapshot:
    """The latest aggregate progress."""

    percentage: float = 0.0
    status: str = "Starting download..."


def parse_size(value: str, unit: str) -> int:
    """Convert a size like ("12.3", "MB") to bytes using 1024 multipliers."""
    multiplier = SIZE_MULTIPLIERS.get(unit.upper(), 1)
    try:
        return int(float(value) * multiplier)
    except ValueError:
        return 0


def _classify_structured(line: str) -> Optional[PullLine]:
    try:
        record = json.loads(line)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None

    detail = record.get("progressDetail") or {}
    if not isinstance(detail, dict):
        detail = {}

    def _as_int(value) -> int:
        try:
            return int(value or 0)
        except (TypeError, ValueError):
            return 0

    return PullLine(
        kind=PullLineKind.STRUCTURED,
        raw=line,
        layer_id=record.get("id") or None,
        status=str(record.get("status") or ""),
        current=_as_int(detail.get("current")),
        total=_as_int(detail.get("total")),
        error=record.get("error") or None,
    )


def classify_line(line: str) -> Optional[PullLine]:
    """
    Decide what a line of pull output is.

    Args:
        line: One line of stdout or stderr from the pull

    Returns:
        The classified line, or None for blank lines
    """
    text = line.strip()
    if not text:
        return None

    if text.startswith("{"):
        structured = _classify_structured(text)
        if structured is not None:
            return structured

    match = LAYER_PREFIX_PATTERN.match(text)
    if match is None:
        if text.startswith("Status:"):
            return PullLine(
                kind=PullLineKind.STATUS,
                raw=text,
                status=text[len("Status:"):].strip(),
            )
        if "Pulling from" in text:
            return PullLine(
                kind=PullLineKind.STATUS,
                raw=text,
                status="Starting download...",
                starts_download=True,
            )
        return PullLine(kind=PullLineKind.UNRECOGNIZED, raw=text)

    layer_id, rest = match.group(1), match.group(2)
    lowered = rest.lower()

    if lowered.startswith("downloading") or lowered.startswith("extracting"):
        status = LayerStatus.EXTRACTING if lowered.startswith("extracting") else LayerStatus.DOWNLOADING
        size = SIZE_PATTERN.search(rest)
        if size:
            return PullLine(
                kind=PullLineKind.LAYER_SIZE,
                raw=text,
                layer_id=layer_id,
                status=status.value,
                current=parse_size(size.group(1), size.group(2)),
                total=parse_size(size.group(3), size.group(4)),
            )
        # Phase without sizes: the layer exists but nothing else is known
        return PullLine(kind=PullLineKind.LAYER_PHRASE, raw=text, layer_id=layer_id)

    for phrase, status in LAYER_PHRASES:
        if phrase in lowered:
            return PullLine(
                kind=PullLineKind.LAYER_PHRASE,
                raw=text,
                layer_id=layer_id,
                status=status.value,
            )

    return PullLine(kind=PullLineKind.LAYER_PHRASE, raw=text, layer_id=layer_id)


class Subscription:
    """Handle returned by PullProgress.subscribe(); cancel() stops delivery."""

    def __init__(self, progress: "PullProgress", callback: ProgressCallback):
        self._progress = progress
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self._progress._unsubscribe(self)
            self.active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()


class PullProgress:
    """
    Aggregates per-layer pull output into overall progress.

    Lines may arrive from several threads at once (stdout and stderr are
    drained separately), so layer state and notifications are serialized
    by a single re-entrant lock.
    """

    def __init__(self):
        self._layers: Dict[str, LayerProgress] = {}
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()
        self._high_water = 0.0
        self._computed_high_water = 0.0
        self._settled = False
        self._snapshot = ProgressSnapshot()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> Subscription:
        """Register a callback receiving (percentage, status)."""
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, percentage: float, status: str) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription.callback(percentage, status)
            except Exception as e:
                logger.warning(f"Progress callback raised: {e}")

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def layers(self) -> Dict[str, LayerProgress]:
        """Copy of the current layer table."""
        with self._lock:
            return {layer_id: replace(layer) for layer_id, layer in self._layers.items()}

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return replace(self._snapshot)

    def reset(self) -> None:
        """Forget all layers and start a new pull run."""
        with self._lock:
            self._layers.clear()
            self._high_water = 0.0
            self._computed_high_water = 0.0
            self._settled = False
            self._snapshot = ProgressSnapshot()

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def process_stream(self, stream: Iterable[str]) -> None:
        """Consume every line of a text stream. Read errors propagate."""
        for line in stream:
            self.process_line(line)

    def process_line(self, line: str) -> None:
        """Classify one line and fold it into the layer table."""
        parsed = classify_line(line)
        if parsed is None:
            return

        with self._lock:
            if parsed.kind == PullLineKind.UNRECOGNIZED:
                logger.debug(f"Non-layer docker output: {parsed.raw}")
                self._emit(STATUS_ONLY, parsed.raw)
                return

            if parsed.kind == PullLineKind.STATUS:
                if parsed.starts_download:
                    self._emit(0.0, parsed.status, settled=self._settled)
                else:
                    self._emit(STATUS_ONLY, parsed.status)
                return

            if parsed.kind == PullLineKind.STRUCTURED:
                if parsed.error:
                    logger.error(f"Docker pull reported an error: {parsed.error}")
                    return
                if not parsed.layer_id:
                    logger.debug(f"Docker status: {parsed.status}")
                    self._emit(STATUS_ONLY, parsed.status)
                    return
                is_new = parsed.layer_id not in self._layers
                self._apply_structured(parsed)
            else:
                is_new = parsed.layer_id not in self._layers
                self._apply_plain(parsed)

            if is_new and self._settled and not self._all_layers_settled():
                # The earlier 100% only covered the layers known at the time
                logger.debug(f"New layer {parsed.layer_id} after all known layers settled")
                self._high_water = self._computed_high_water

            self._settled = self._all_layers_settled()
            self._emit(self._calculate_overall_progress(), self._overall_status(), settled=self._settled)

    def _layer(self, layer_id: str) -> LayerProgress:
        layer = self._layers.get(layer_id)
        if layer is None:
            layer = LayerProgress(id=layer_id)
            self._layers[layer_id] = layer
        return layer

    @staticmethod
    def _set_download(layer: LayerProgress, current: int, total: int) -> None:
        # A real total, once seen, is never replaced by a smaller one
        if layer.has_meaningful_download and total < layer.download_total:
            total = layer.download_total
        layer.download_total = total
        layer.download_current = min(current, total) if total > 0 else current

    @staticmethod
    def _set_extract(layer: LayerProgress, current: int, total: int) -> None:
        if layer.has_meaningful_extract and total < layer.extract_total:
            total = layer.extract_total
        layer.extract_total = total
        layer.extract_current = min(current, total) if total > 0 else current

    def _apply_structured(self, parsed: PullLine) -> None:
        layer = self._layer(parsed.layer_id)
        status = STRUCTURED_STATUS_ALIASES.get(parsed.status, parsed.status)
        layer.status = status.value if isinstance(status, LayerStatus) else status

        if layer.status == LayerStatus.DOWNLOADING:
            if parsed.total > 0:
                self._set_download(layer, parsed.current, parsed.total)
        elif layer.status == LayerStatus.EXTRACTING:
            if parsed.total > 0:
                self._set_extract(layer, parsed.current, parsed.total)
        elif layer.status in (LayerStatus.PULL_COMPLETE, LayerStatus.ALREADY_EXISTS):
            layer.download_current = layer.download_total
            layer.extract_current = layer.extract_total
        elif layer.status == LayerStatus.DOWNLOAD_COMPLETE:
            layer.download_current = layer.download_total

    def _apply_plain(self, parsed: PullLine) -> None:
        layer = self._layer(parsed.layer_id)

        if parsed.kind == PullLineKind.LAYER_SIZE:
            layer.status = parsed.status
            if parsed.status == LayerStatus.EXTRACTING:
                self._set_extract(layer, parsed.current, parsed.total)
            else:
                self._set_download(layer, parsed.current, parsed.total)
            return

        if not parsed.status:
            return

        layer.status = parsed.status
        if parsed.status == LayerStatus.ALREADY_EXISTS:
            layer.download_current = layer.download_total = 1
            layer.extract_current = layer.extract_total = 1
        elif parsed.status == LayerStatus.PULL_COMPLETE:
            if layer.download_total > 0:
                layer.download_current = layer.download_total
            else:
                layer.download_current = layer.download_total = 1
            if layer.extract_total > 0:
                layer.extract_current = layer.extract_total
            else:
                layer.extract_current = layer.extract_total = 1
        elif parsed.status == LayerStatus.DOWNLOAD_COMPLETE:
            if layer.download_total > 0:
                layer.download_current = layer.download_total

    def _all_layers_settled(self) -> bool:
        return bool(self._layers) and all(
            layer.is_cached or layer.is_complete for layer in self._layers.values()
        )

    def _emit(self, percentage: float, status: str, settled: bool = False) -> None:
        if percentage != STATUS_ONLY:
            percentage = max(0.0, min(100.0, percentage))
            # Never report backwards within one pull run
            if percentage < self._high_water:
                percentage = self._high_water
            self._high_water = percentage
            if not settled:
                self._computed_high_water = percentage
            self._snapshot = ProgressSnapshot(percentage=percentage, status=status)
        else:
            self._snapshot = ProgressSnapshot(percentage=self._snapshot.percentage, status=status)
        self._notify(percentage, status)

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _calculate_overall_progress(self) -> float:
        """Compute the overall percentage from the layer table (lock held)."""
        if not self._layers:
            return 0.0

        cached_layers = 0
        completed_layers = 0
        meaningful_layers = 0
        total_download = current_download = 0
        total_extract = current_extract = 0

        for layer in self._layers.values():
            if layer.is_cached:
                cached_layers += 1
                continue
            if layer.is_complete:
                completed_layers += 1

            if layer.has_meaningful_download:
                total_download += layer.download_total
                current_download += layer.download_current
            if layer.has_meaningful_extract:
                total_extract += layer.extract_total
                current_extract += layer.extract_current
            if layer.has_meaningful_bytes:
                meaningful_layers += 1

        total_layers = len(self._layers)
        work_layers = total_layers - cached_layers

        if cached_layers == total_layers:
            logger.debug("All layers cached, returning 100%")
            return 100.0

        if completed_layers + cached_layers == total_layers:
            logger.debug("All layers complete or cached, returning 100%")
            return 100.0

        has_byte_data = total_download > 0 or total_extract > 0
        use_bytes = has_byte_data and (
            meaningful_layers >= BYTE_MODE_MIN_LAYERS
            or meaningful_layers / work_layers > BYTE_MODE_LAYER_SHARE
        )

        if not use_bytes:
            progress = completed_layers / work_layers * 100
            logger.debug(
                f"Layer-based progress: {completed_layers}/{work_layers} work layers complete = {progress:.1f}%"
            )
            return progress

        download_progress = current_download / total_download * DOWNLOAD_WEIGHT if total_download else 0.0
        extract_progress = current_extract / total_extract * EXTRACT_WEIGHT if total_extract else 0.0
        progress = download_progress + extract_progress

        if meaningful_layers < work_layers:
            # Blend in layers that finished without ever reporting bytes
            layers_without_bytes = work_layers - meaningful_layers
            completed_without_bytes = sum(
                1 for layer in self._layers.values()
                if layer.is_complete and not layer.has_meaningful_bytes
            )
            non_byte_progress = completed_without_bytes / layers_without_bytes * 100
            byte_weight = meaningful_layers / work_layers
            non_byte_weight = layers_without_bytes / work_layers
            progress = progress * byte_weight + non_byte_progress * non_byte_weight
            logger.debug(
                f"Mixed progress - byte layers: {meaningful_layers}/{work_layers}, "
                f"non-byte complete: {completed_without_bytes}/{layers_without_bytes}, total: {progress:.1f}%"
            )

        return min(progress, 100.0)

    def _overall_status(self) -> str:
        """Human-readable status for the current layer table (lock held)."""
        downloading = extracting = complete = cached = preparing = 0
        for layer in self._layers.values():
            if layer.status == LayerStatus.DOWNLOADING:
                downloading += 1
            elif layer.status == LayerStatus.EXTRACTING:
                extracting += 1
            elif layer.is_complete:
                complete += 1
            elif layer.is_cached:
                cached += 1
            elif layer.status in PREPARING_STATUSES:
                preparing += 1

        total_layers = len(self._layers)
        work_layers = total_layers - cached

        if total_layers > 0 and cached == total_layers:
            return "Image already available"
        if downloading > 0:
            return f"Downloading layers ({complete}/{work_layers} completed)"
        if extracting > 0:
            return f"Extracting layers ({complete}/{work_layers} completed)"
        if work_layers > 0 and complete == work_layers:
            return "Pull complete"
        if preparing > 0:
            return "Initializing download..."
        return "Starting download..."
