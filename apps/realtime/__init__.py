"""
Real-time progress delivery: progress events, the per-user broadcast hub,
the Redis relay between processes, the websocket server and the client
side subscriber contract.
"""
