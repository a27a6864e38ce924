"""Socket.IO handlers and helpers for loaded channels.

A channel is "loaded" while at least one socket has joined it. Registering or
deleting a channel through the account pages reloads it: everyone connected
is kicked and the channel is unloaded, so the next join picks up the new
registration state.
"""

from __future__ import annotations

import logging

from flask import g, request
from flask_socketio import emit, join_room

from auth_session import load_request_user
from database import AccountError, lookup_channel
from realtime.state import LOADED_CHANNELS, LOADED_CHANNELS_LOCK
from utilities import is_valid_channel_name

SOCKET_NAMESPACE = "/"


def channel_room(name: str) -> str:
    return f"channel:{name.lower()}"


def is_channel_loaded(name: str) -> bool:
    with LOADED_CHANNELS_LOCK:
        return (name or "").lower() in LOADED_CHANNELS


def get_channel(name: str) -> dict | None:
    """Snapshot of a loaded channel, or None."""
    with LOADED_CHANNELS_LOCK:
        chan = LOADED_CHANNELS.get((name or "").lower())
        if chan is None:
            return None
        return {"name": chan["name"], "registered": chan["registered"], "users": dict(chan["users"])}


def add_user(name: str, sid: str, username: str, registered: bool) -> None:
    key = name.lower()
    with LOADED_CHANNELS_LOCK:
        chan = LOADED_CHANNELS.get(key)
        if chan is None:
            chan = {"name": name, "registered": bool(registered), "users": {}}
            LOADED_CHANNELS[key] = chan
            logging.info("[channel] loaded %s (registered=%s)", name, chan["registered"])
        chan["users"][sid] = username


def remove_sid(sid: str) -> list[str]:
    """Drop a socket from every channel; unload channels left empty."""
    emptied = []
    with LOADED_CHANNELS_LOCK:
        for key, chan in list(LOADED_CHANNELS.items()):
            if chan["users"].pop(sid, None) is not None and not chan["users"]:
                emptied.append(chan["name"])
                del LOADED_CHANNELS[key]
    for name in emptied:
        logging.info("[channel] unloaded %s (empty)", name)
    return emptied


def reload_channel(socketio, name: str, reason: str, clear_registered: bool = False) -> int:
    """Kick everyone out of a loaded channel and unload it.

    Returns the number of sockets kicked (0 when the channel is not loaded).
    """
    key = (name or "").lower()
    with LOADED_CHANNELS_LOCK:
        chan = LOADED_CHANNELS.get(key)
        if chan is None:
            return 0
        if clear_registered:
            chan["registered"] = False
        sids = list(chan["users"].keys())

    room = channel_room(name)
    for sid in sids:
        if socketio is None:
            continue
        try:
            socketio.emit("kick", {"reason": reason}, to=sid)
            socketio.server.leave_room(sid, room, namespace=SOCKET_NAMESPACE)
            socketio.server.disconnect(sid, namespace=SOCKET_NAMESPACE)
        except (KeyError, ValueError) as e:
            # Socket already gone.
            logging.debug("kick of %s from %s skipped: %s", sid, name, e)

    with LOADED_CHANNELS_LOCK:
        LOADED_CHANNELS.pop(key, None)
    logging.info("[channel] reloaded %s, kicked %d socket(s): %s", name, len(sids), reason)
    return len(sids)


def register(socketio, settings):
    """Register Socket.IO event handlers for this module."""

    @socketio.on("joinChannel")
    def handle_join_channel(data=None):
        name = (data or {}).get("name")
        if not is_valid_channel_name(name):
            emit("errorMsg", {"msg": "Invalid channel name"}, to=request.sid)
            return {"success": False, "error": "invalid_channel"}

        load_request_user()
        username = g.user["name"] if g.user else ""

        if is_channel_loaded(name):
            registered = bool((get_channel(name) or {}).get("registered"))
        else:
            try:
                lookup_channel(name)
                registered = True
            except AccountError:
                registered = False

        join_room(channel_room(name))
        add_user(name, request.sid, username, registered)
        emit("channelJoined", {"name": name, "registered": registered}, to=request.sid)
        return {"success": True, "registered": registered}

    @socketio.on("disconnect")
    def handle_disconnect(*_args):
        remove_sid(request.sid)
