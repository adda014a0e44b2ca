"""Plain-text simulation reports."""

from datetime import datetime

from lifecycle_engine.simulator.simulator import SimulationResult


def format_report(result: SimulationResult, include_traces: bool = True) -> str:
    """
    Render a simulation result for the terminal.

    Example:
        ============================================================
        RULE SIMULATION: LOW_BALANCE
        ============================================================
        Candidates: 2   Matched: 1

        1. low_balance_offer (priority 5)
           - SEND_SPECIAL_OFFER [offer=PACK_100]
    """
    lines = []
    lines.append("=" * 60)
    lines.append(f"RULE SIMULATION: {result.trigger.value}")
    lines.append(f"Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    lines.append("=" * 60)
    lines.append(f"Candidates: {result.total_candidates}   Matched: {len(result.matched_rules)}")
    lines.append("")

    if not result.matched_rules:
        lines.append("No rules would fire.")
    for index, match in enumerate(result.matched_rules, 1):
        rule = match.rule
        title = f"{rule.code} - {rule.name}" if rule.name else rule.code
        lines.append(f"{index}. {title} (priority {rule.priority})")
        if not rule.actions:
            lines.append("   (no actions)")
        for action in rule.actions:
            config = ", ".join(f"{k}={v}" for k, v in action.config.items())
            lines.append(f"   - {action.type}" + (f" [{config}]" if config else ""))

    if include_traces and result.traces:
        lines.append("")
        lines.append("-" * 60)
        lines.append("TRACES")
        lines.append("-" * 60)
        for trace in result.traces:
            lines.append(trace.to_compact_string())

    return "\n".join(lines)


__all__ = ["format_report"]
