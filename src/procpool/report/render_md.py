from __future__ import annotations

from typing import Any


def _cell(value: object) -> str:
    return "-" if value is None else str(value)


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    tasks = summary["tasks"]
    problems = summary["problems"]

    lines: list[str] = []
    lines.append("# Task Run Report")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- generated_at: `{run['generated_at']}`")
    lines.append(f"- total: {run['total']}")
    lines.append(f"- succeeded: **{run['succeeded']}**")
    lines.append(f"- processed: {run['done']}")
    lines.append(f"- still running: {run['running']}")
    lines.append(f"- waiting: {run['waiting']}")
    lines.append(f"- global retries: {run['global_retry_count']}")
    lines.append("")
    lines.append("## Task Results")
    lines.append("")
    lines.append(
        "| # | command | status | retries | exit_code | signal | duration_sec | timed_out |"
    )
    lines.append("|---:|---|---|---:|---:|---|---:|---|")
    for row in tasks:
        command = str(row["command"]).replace("|", "\\|")
        lines.append(
            f"| {row['index']} | `{command}` | {row['status']} | {row['retries']} | "
            f"{_cell(row['exit_code'])} | {_cell(row['signal'])} | "
            f"{_cell(row['duration_sec'])} | {'yes' if row['timed_out'] else 'no'} |"
        )
    lines.append("")
    lines.append("## Failed / Timed Out / Stopped Details")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### task {row['index']} ({row['status']})")
            lines.append("- stderr tail:")
            lines.append("```")
            lines.extend(row["stderr_tail"] or ["(empty)"])
            lines.append("```")
            lines.append("")
    else:
        lines.append("No failed/timed out/stopped tasks.")
        lines.append("")
    return "\n".join(lines)
