"""
Real-time components: the market clock (APScheduler) and the live
WebSocket / SSE stream.
"""
