"""Backend transports.

Modules:
- base: transport + handle interfaces
- http: httpx implementation against the coaching backend
- mock: deterministic echo transport for local runs
- factory: env-driven selection
"""
