"""
Trader orchestration package.

The headless entrypoint remains `main.py` at the repo root. The cycle logic lives in
`src/trader/orchestrator.py` and is wired together in `src/trader/runner.py`.
"""
