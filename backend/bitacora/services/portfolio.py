from typing import Any

# residual units below this are treated as a closed position
UNIT_EPSILON = 1e-9


def _percentage(gain: float, base: float) -> float:
    return (gain / base) * 100 if base > 0 else 0.0


def empty_portfolio() -> dict[str, Any]:
    return {
        "total_invested": 0.0,
        "current_value": 0.0,
        "total_return": 0.0,
        "total_return_percentage": 0.0,
        "holdings": [],
        "transaction_count": 0,
        "first_transaction_date": None,
        "last_transaction_date": None,
    }


def calculate_portfolio(
    transactions: list[dict[str, Any]],
    instruments: dict[str, dict[str, Any]] | None = None,
    prices: dict[str, float] | None = None,
) -> dict[str, Any]:
    """Aggregate holdings at average cost.

    Buys add units and ``total_amount + fees`` to the cost basis; sells remove
    units and the matching share of the basis. Dividends, transfers and splits
    do not move the basis. ``prices`` overrides the instruments' stored price.
    """
    instruments = instruments or {}
    prices = prices or {}
    if not transactions:
        return empty_portfolio()

    ordered = sorted(transactions, key=lambda row: row["date"])
    positions: dict[str, dict[str, float]] = {}
    for row in ordered:
        position = positions.setdefault(row["ticker"], {"units": 0.0, "cost": 0.0})
        if row["type"] == "buy":
            position["units"] += row["units"]
            position["cost"] += row["total_amount"] + (row.get("fees") or 0)
        elif row["type"] == "sell" and position["units"] > 0:
            sold = min(row["units"], position["units"])
            position["cost"] -= (position["cost"] / position["units"]) * sold
            position["units"] -= sold

    holdings: list[dict[str, Any]] = []
    for ticker, position in sorted(positions.items()):
        units = position["units"]
        if units <= UNIT_EPSILON:
            continue
        instrument = instruments.get(ticker, {})
        price = prices.get(ticker, instrument.get("current_price") or 0.0)
        cost = position["cost"]
        value = units * price
        holdings.append(
            {
                "ticker": ticker,
                "name": instrument.get("name") or ticker,
                "units": units,
                "average_cost": cost / units,
                "total_invested": cost,
                "current_price": price,
                "current_value": value,
                "return_percentage": _percentage(value - cost, cost),
            }
        )

    total_invested = sum(item["total_invested"] for item in holdings)
    current_value = sum(item["current_value"] for item in holdings)
    return {
        "total_invested": total_invested,
        "current_value": current_value,
        "total_return": current_value - total_invested,
        "total_return_percentage": _percentage(current_value - total_invested, total_invested),
        "holdings": holdings,
        "transaction_count": len(transactions),
        "first_transaction_date": ordered[0]["date"],
        "last_transaction_date": ordered[-1]["date"],
    }
