"""sessionbridge -- concurrent shell session broker.

Exposes long-lived interactive shell contexts (local pty shells and
PowerShell engines, optionally remoting to another host) to many HTTP
and WebSocket clients. Each session runs at most one command at a
time; commands can be cancelled or time out, and live output is fanned
out to every connected observer.
"""

__version__ = "0.1.0"
