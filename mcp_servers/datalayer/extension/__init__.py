"""Client end of the relay: what the browser extension runs.

Attachment state, hit buffers, the GTM preview cursor and the reconnecting
relay connection. Browser APIs are reached through `service.TabHost`.
"""

from __future__ import annotations
