"""
PerformanceAggregate: projection of the TradeRecord history.

Never a source of truth: recomputed from the trade log whenever needed.
"""
import pandas as pd


EMPTY_PERFORMANCE = {
    'total_trades': 0,
    'wins': 0,
    'losses': 0,
    'win_rate_pct': 0.0,
    'avg_profit_pct': 0.0,
    'best_trade_pct': 0.0,
    'worst_trade_pct': 0.0,
    'total_volume': 0.0,
    'profit_factor': 0.0,
}


def compute_performance(trades) -> dict:
    """
    Aggregate win rate, average profit % and traded volume.

    Args:
        trades: iterable of TradeRecord (or dicts with the same keys)
    """
    rows = [t.to_dict() if hasattr(t, 'to_dict') else dict(t) for t in trades]
    if not rows:
        return dict(EMPTY_PERFORMANCE)

    df = pd.DataFrame(rows)
    profit = df['profit_pct'].astype('float64')
    volume = (df['size'] * (df['entry_price'] + df['exit_price'])).astype('float64')

    wins = int((profit > 0).sum())
    total = len(df)
    gross_profit = float(profit[profit > 0].sum())
    gross_loss = float(-profit[profit < 0].sum())

    return {
        'total_trades': total,
        'wins': wins,
        'losses': total - wins,
        'win_rate_pct': round(wins / total * 100, 1),
        'avg_profit_pct': round(float(profit.mean()), 4),
        'best_trade_pct': round(float(profit.max()), 4),
        'worst_trade_pct': round(float(profit.min()), 4),
        'total_volume': round(float(volume.sum()), 8),
        'profit_factor': round(gross_profit / max(gross_loss, 1e-9), 3)
        if gross_loss > 0 else 0.0,
    }
