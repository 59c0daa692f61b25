"""CLI dashboard — prints engine status to the console."""


def print_status(status: dict, stats: dict | None = None) -> str:
    """Format and print the current engine status.

    Args:
        status: Dict as returned by ``EngineManager.get_status()``.
        stats: Optional ``TradeStats.to_dict()`` for the performance block.

    Returns:
        The formatted string (also printed to stdout).
    """
    mode = status.get("mode", "unknown")
    running = status.get("running", False)
    account = status.get("account") or {}
    capital = account.get("current_capital")
    drawdown = account.get("drawdown_pct")
    losses = account.get("consecutive_losses", 0)
    cb_active = account.get("circuit_breaker_active", False)
    positions = status.get("open_positions", 0)

    capital_str = f"${capital:,.2f}" if capital is not None else "N/A"
    dd_str = f"{drawdown:.2f}%" if drawdown is not None else "N/A"
    cb_str = "ACTIVE" if cb_active else "off"

    lines = [
        "──────────────── TrendPilot Status ────────────────",
        f"  Mode:            {mode}",
        f"  Running:         {running}",
        f"  Capital:         {capital_str}",
        f"  Drawdown:        {dd_str}",
        f"  Loss Streak:     {losses}",
        f"  Circuit Breaker: {cb_str}",
        f"  Open Positions:  {positions}",
    ]

    for instrument_id, info in (status.get("instruments") or {}).items():
        price = info.get("current_price")
        price_str = f"{price:,.6f}" if price is not None else "N/A"
        insight = info.get("insight") or {}
        state = "ENTERED" if info.get("position") else "FLAT"
        lines.append(
            f"  {instrument_id[:16]:<16} {price_str:>16}  {state:<7} "
            f"{insight.get('result', '-')}"
        )

    if stats:
        lines.extend([
            f"  Trades:          {stats.get('total_trades', 0)} "
            f"({stats.get('winning_trades', 0)} won, {stats.get('win_rate', 0.0):.1f}%)",
            f"  Total Profit:    {stats.get('total_profit', 0.0):,.4f}",
            f"  Max Drawdown:    {stats.get('max_drawdown_pct', 0.0):.2f}%",
        ])

    lines.append("──────────────────────────────────────────────────")
    output = "\n".join(lines)
    print(output)
    return output
