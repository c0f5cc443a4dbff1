import logging
import threading

from realtime.state import AI_SWEEP_INTERVAL_SECONDS


def start_janitor(pool, settings: dict, stop_event: threading.Event, spawn=None):
    """Start the background sweep loop for idle ghost profiles.

    Runs ``pool.sweep_inactive()`` every ``ai_sweep_interval_seconds`` until
    ``stop_event`` is set. ``spawn`` is the Socket.IO background-task starter
    (so eventlet deployments get a green thread); without it a daemon thread
    is used.
    """

    def _loop():
        while not stop_event.is_set():
            # Re-read settings each cycle so runtime changes take effect live.
            try:
                interval = float(settings.get("ai_sweep_interval_seconds", AI_SWEEP_INTERVAL_SECONDS))
            except (TypeError, ValueError):
                interval = AI_SWEEP_INTERVAL_SECONDS
            interval = max(1.0, min(interval, 3600.0))

            if stop_event.wait(interval):
                break

            try:
                evicted = pool.sweep_inactive()
                if evicted:
                    logging.info("[JANITOR] evicted %d idle ghost profiles", len(evicted))
            except Exception as e:
                logging.error("[JANITOR] ghost sweep error: %s", e)

        logging.info("[JANITOR] stopped")

    if spawn is not None:
        return spawn(_loop)

    t = threading.Thread(target=_loop, name="confeed_janitor", daemon=True)
    t.start()
    return t
