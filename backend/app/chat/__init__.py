"""Real-time room chat.

Modules:
    - coordinator: Session state machine over rooms, identities and bans
    - rooms: Room registry and bounded per-room history
    - identity: Display name <-> connection binding
    - bans: Origin deny-list
    - admin: Administrator login with failure throttling
    - manager: WebSocket delivery of coordinator outcomes
    - router: WebSocket and HTTP endpoints
"""
