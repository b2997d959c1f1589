"""JSON output formatter for pipeline run summaries."""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from src.models.data_models import PipelineRunContext


class JSONOutputFormatter:
    """
    Formats a finished run as JSON.

    Example output structure:
    {
        "run": {
            "run_id": "run-1718000000000-004211",
            "pipeline_type": "github_sync",
            "state": "completed",
            "success": true,
            "duration_seconds": 3.21
        },
        "stats": {"repositories_fetched": 2, "stored_merge_request": 40},
        "entity_counts": {"repository": 2, "merge_request": 40},
        "errors": [{"stage": "extract-entities", "message": "...", ...}],
        "client": {"cache": {...}, "circuits": {...}, "quota": {...}}
    }
    """

    def format(self, context: PipelineRunContext, client_stats: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        summary = context.summary()
        formatted = {
            "run": {
                "run_id": summary["run_id"],
                "pipeline_type": summary["pipeline_type"],
                "state": summary["state"],
                "success": summary["success"],
                "started_at": summary["started_at"],
                "completed_at": summary["completed_at"],
                "duration_seconds": (
                    round(summary["duration_seconds"], 2) if summary["duration_seconds"] is not None else None
                ),
            },
            "stats": summary["stats"],
            "entity_counts": summary["entity_counts"],
            "errors": summary["errors"],
        }
        if client_stats is not None:
            formatted["client"] = client_stats
        return formatted

    def save(
        self,
        context: PipelineRunContext,
        path: str = "out/run_summary.json",
        client_stats: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Save formatted summary to a JSON file, creating parent directories.

        Args:
            context: Finished run context
            path: Output file path
            client_stats: Optional resilient client statistics to include
        """
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.format(context, client_stats), f, indent=2, ensure_ascii=False, default=str)
