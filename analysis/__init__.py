"""
Analytics Engine Module

Calculates staking analytics from repository rows:
- Concentration (HHI, top-N share, effective entities)
- Volatility (7D, 30D, 90D trailing stddev, trend)
- Commission impact (effective rate precedence, network comparison)
- Percentile rankings and network distributions
- Risk levels
"""

__version__ = "0.1.0"
