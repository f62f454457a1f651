"""
hubbridge: lets a Jellyfin-style media hub drive a local mpv.

The hub's "Play on" target is this device: remote Play / Playstate commands
arrive over the hub's event socket, are turned into mpv IPC commands, and
mpv's position / end-of-file / key presses are reported back to the hub.
"""

__version__ = "1.0.0"
