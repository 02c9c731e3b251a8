"""Daily sweep that closes waiting rooms nobody started.

- ``sweep(now)`` closes every WAITING lobby created more than
  ``LOBBY_STALE_HOURS`` before ``now``; each close takes that lobby's lock
- ``start_janitor(app)`` runs the sweep once a day at ``LOBBY_SWEEP_HOUR`` UTC
  in a Socket.IO background task; it no-ops in TESTING mode
"""
import time
from datetime import datetime, timedelta
from typing import List

from flask import current_app

from gptuessr import db, socketio
from gptuessr.models import Lobby, LobbyStatus, utcnow
from gptuessr.services.locks import lobby_lock


def sweep(now: datetime = None, stale_after: timedelta = None) -> List[str]:
    """Close stale waiting lobbies. Returns the codes that were closed."""
    now = now or utcnow()
    if stale_after is None:
        stale_after = timedelta(hours=int(current_app.config.get('LOBBY_STALE_HOURS', 24)))
    cutoff = now - stale_after
    current_app.logger.info(f"[janitor] sweeping lobbies waiting since before {cutoff.isoformat()}")

    candidates = [
        code for (code,) in db.session.query(Lobby.code)
        .filter(Lobby.status == LobbyStatus.WAITING, Lobby.created_at < cutoff)
        .all()
    ]
    current_app.logger.info(f"[janitor] found {len(candidates)} stale lobbies")

    closed = []
    for code in candidates:
        with lobby_lock(code):
            lobby = Lobby.query.filter_by(code=code).populate_existing().with_for_update().first()
            # Re-check: the lobby may have started or closed since the scan
            if not lobby or lobby.status != LobbyStatus.WAITING or lobby.created_at >= cutoff:
                continue
            lobby.status = LobbyStatus.CLOSED
            lobby.ended_at = now
            db.session.commit()
        closed.append(code)
        current_app.logger.info(f"[janitor] closed inactive lobby {code}")
        socketio.emit('lobby_closed', {'lobby_code': code, 'reason': 'inactive'}, to=f"lobby:{code}", namespace='/ws')
    return closed


def seconds_until_next_run(now: datetime, hour: int) -> float:
    """Seconds from ``now`` until the next ``hour``:00:00 (same day if still ahead)."""
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def start_janitor(app) -> None:
    if app.config.get('TESTING') or not app.config.get('LOBBY_JANITOR_ENABLED', True):
        return

    hour = int(app.config.get('LOBBY_SWEEP_HOUR', 0))

    def _worker():
        while True:
            delay = seconds_until_next_run(utcnow(), hour)
            app.logger.info(f"[janitor] next sweep in {int(delay)}s")
            time.sleep(delay)
            with app.app_context():
                try:
                    sweep()
                except Exception:
                    # Retried at the next scheduled run
                    db.session.rollback()
                    app.logger.exception('[janitor] sweep failed')

    socketio.start_background_task(_worker)
    app.logger.info(f"[janitor] scheduled daily at {hour:02d}:00 UTC")
