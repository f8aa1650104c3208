"""termrelay -- Remote interactive shell relay.

Lets a remote client drive interactive shells on a host over an
unreliable connection: keystrokes go to a live pseudo-terminal, output
streams back in order, and sessions survive disconnects and process
crashes.
"""

__version__ = "0.1.0"
