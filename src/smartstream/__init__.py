"""SmartStream: supervised FFmpeg relay of IP camera streams.

Reads camera RTSP feeds and relays them to YouTube, Twitch or a custom RTMP
server, keeping one FFmpeg process alive per job under flaky network and
hardware conditions.
"""

__version__ = "1.0.0"
