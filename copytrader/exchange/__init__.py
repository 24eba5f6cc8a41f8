"""
Pacifica exchange connectivity.

- Trade feed subscriber (websocket)
- Signed REST execution client with rate-limited dispatch
- Market metadata cache
"""
