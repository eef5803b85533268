"""Output formatting for seeding progress."""

from fdc_seeder.output.formatters import (
    format_db_stats,
    format_monitor_view,
    format_status_json,
    format_status_summary,
    render_progress_bar
)

__all__ = [
    "format_db_stats",
    "format_monitor_view",
    "format_status_json",
    "format_status_summary",
    "render_progress_bar"
]
