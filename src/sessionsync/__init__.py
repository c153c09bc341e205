"""
SessionSync -- conversation sync that knows where the code was.

Carries an append-only conversation stream between devices as
compressed snapshots and deltas, and refuses to save or resume
while the git working copy is in a state that would lie about it.
"""

import os

__version__ = "0.1.0"

SYNC_HOME = os.environ.get("SESSIONSYNC_HOME", "~/.sessionsync")
