"""
Overlay Broadcast

Streams a browser-rendered overlay page to RTMP destinations from a
headless host: Xvfb virtual display, kiosk Chromium driven by Playwright,
ffmpeg x11grab encoding, and optional LiveKit ingress/HLS egress.

Modules:
- config: layered configuration (config.json + config.local.json)
- display: Xvfb display allocation
- browser: overlay rendering
- audio: silence or looping playlist
- encoder: ffmpeg command construction and process
- ingress / egress: LiveKit cloud integration
- supervisor: lifecycle state machine and ordered teardown
- daemon: CLI entry point
"""

__version__ = "0.1.0"
