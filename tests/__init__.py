"""
Tile Streamer Test Suite

Structure:
- unit/: geodesy, tile addressing, loaders, config, scheduler
- integration/: FastAPI server with a hosted streamer
- fakes.py: deterministic asset loader used by scheduler/server tests
"""
