"""
Market bounded context: instruments, price simulation, index, candles
and allocation optimization.
"""
