"""Formatters for checkpoint progress (monitor view, status summary, JSON)."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from fdc_seeder.ingestion.checkpoint_store import IngestionCheckpoint, estimate_completion, utc_now

BAR_WIDTH = 40
FILLED = "█"
EMPTY = "░"
RECENT_ERRORS = 5


def render_progress_bar(processed: int, total: int, width: int = BAR_WIDTH) -> str:
    """Render a fixed-width progress bar.

    Args:
        processed: Items processed so far
        total: Total items expected (0 when unknown)
        width: Number of bar cells

    Returns:
        String like "[████░░░░] 50.0%"; the percentage is "?" when total is unknown
    """
    if total <= 0:
        return f"[{EMPTY * width}] ?%"
    fraction = min(1.0, max(0.0, processed / total))
    filled = int(round(fraction * width))
    return f"[{FILLED * filled}{EMPTY * (width - filled)}] {fraction * 100:.1f}%"


def format_duration(seconds: float) -> str:
    """Format a duration as "2h 05m", "4m 09s" or "12s"."""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def throughput(checkpoint: IngestionCheckpoint, now: Optional[datetime] = None) -> Optional[float]:
    """Items per hour since the run started, or None before any time has passed."""
    now = now or utc_now()
    elapsed = (now - checkpoint.start_time).total_seconds()
    if elapsed <= 0:
        return None
    return checkpoint.processed_items / elapsed * 3600


def format_monitor_view(checkpoint: IngestionCheckpoint, now: Optional[datetime] = None) -> str:
    """Format the live monitor screen for one checkpoint snapshot.

    Args:
        checkpoint: Snapshot read from disk
        now: Current time (defaults to UTC now)

    Returns:
        Multi-line text block
    """
    now = now or utc_now()
    lines = []

    lines.append("USDA FoodData Central seeding")
    lines.append("=" * (BAR_WIDTH + 10))
    lines.append(render_progress_bar(checkpoint.processed_items, checkpoint.total_items))
    lines.append(f"Processed:  {checkpoint.processed_items:,} / {checkpoint.total_items:,}")

    partition = checkpoint.current_data_type or "-"
    lines.append(
        f"Partition:  {partition} (#{checkpoint.current_data_type_index + 1}), "
        f"last page {checkpoint.current_page}"
    )
    lines.append(
        f"Inserted:   {checkpoint.successful_inserts:,}   "
        f"Duplicates: {checkpoint.skipped_duplicates:,}   "
        f"Errors: {len(checkpoint.errors)}"
    )
    lines.append(f"Buffered:   {len(checkpoint.batch_buffer)} record(s) awaiting write")

    elapsed = (now - checkpoint.start_time).total_seconds()
    rate = throughput(checkpoint, now)
    if rate is None:
        lines.append("Rate:       -")
    else:
        lines.append(f"Rate:       {rate:,.0f} items/hour ({rate / 60:,.1f} items/minute)")
    lines.append(f"Elapsed:    {format_duration(elapsed)}")

    if checkpoint.total_items > 0 and checkpoint.processed_items >= checkpoint.total_items:
        lines.append("ETA:        complete")
    else:
        eta = estimate_completion(checkpoint, now)
        if eta is None:
            lines.append("ETA:        unknown")
        else:
            remaining = (eta - now).total_seconds()
            lines.append(
                f"ETA:        {eta.strftime('%Y-%m-%d %H:%M:%S %Z')} "
                f"({format_duration(remaining)} remaining)"
            )

    since_update = (now - checkpoint.last_update_time).total_seconds()
    lines.append(f"Updated:    {format_duration(since_update)} ago")

    recent = checkpoint.errors[-RECENT_ERRORS:]
    if recent:
        lines.append("")
        lines.append(f"Recent errors ({len(recent)} of {len(checkpoint.errors)}):")
        for error in recent:
            lines.append(f"  - {error}")

    return "\n".join(lines)


def format_status_summary(checkpoint: IngestionCheckpoint) -> str:
    """One-shot text summary used by ``status``."""
    percent = checkpoint.percent_complete
    lines = [
        f"Partition:           {checkpoint.current_data_type or '-'} "
        f"(index {checkpoint.current_data_type_index}, last page {checkpoint.current_page})",
        f"Processed:           {checkpoint.processed_items:,} / {checkpoint.total_items:,}"
        + (f" ({percent:.1f}%)" if percent is not None else ""),
        f"Successful inserts:  {checkpoint.successful_inserts:,}",
        f"Skipped duplicates:  {checkpoint.skipped_duplicates:,}",
        f"Errors logged:       {len(checkpoint.errors)}",
        f"Buffered records:    {len(checkpoint.batch_buffer)}",
        f"Started:             {checkpoint.start_time.isoformat()}",
        f"Last update:         {checkpoint.last_update_time.isoformat()}",
    ]
    if checkpoint.estimated_completion is not None:
        lines.append(f"Estimated completion: {checkpoint.estimated_completion.isoformat()}")
    if checkpoint.partition_totals:
        lines.append("Partition totals:")
        for name, total in checkpoint.partition_totals.items():
            lines.append(f"  {name}: {total:,}")
    return "\n".join(lines)


def format_status_json(
    checkpoint: Optional[IngestionCheckpoint],
    db_stats: Optional[Dict[str, Any]] = None,
    indent: int = 2
) -> str:
    """JSON dump of the checkpoint document, plus store statistics when given."""
    payload: Dict[str, Any] = {
        "checkpoint": checkpoint.to_document() if checkpoint is not None else None,
    }
    if db_stats is not None:
        payload["database"] = db_stats
    return json.dumps(payload, indent=indent)


def format_db_stats(stats: Dict[str, Any]) -> str:
    lines: List[str] = [
        f"Ingredients in store: {stats['total_ingredients']:,}",
        f"With calories:        {stats['with_calories']:,}",
    ]
    categories = stats.get("category_counts") or {}
    if categories:
        lines.append("By category:")
        for category, count in categories.items():
            lines.append(f"  {category}: {count:,}")
    recent = stats.get("recently_added") or []
    if recent:
        lines.append("Recently synced:")
        for item in recent:
            lines.append(f"  - {item['name']} ({item['usda_sync_date']})")
    return "\n".join(lines)
