"""
Realtime gateway components, grouped by concern:
- core/       - constants, log hygiene, exceptions
- connection/ - connection registry, rate limiting, keepalive
- rooms/      - typed room keys and the membership tracker
- presence/   - online/offline status per identity
- events/     - event catalog, payload models, frame envelope
- endpoints/  - transport seam and WebSocket endpoint
- resilience/ - circuit breaker for persistence calls
- metrics/    - counters and Prometheus export

Import from the submodules; nothing is re-exported here.
"""
