"""
VaultNote — notes and bookmarks that live in your own Git repository.

A local store that stays in step with a hosted repository, with optional
end-to-end encryption under one master password shared by every device.
"""

import os

__version__ = "0.1.0"

VAULTNOTE_HOME = os.environ.get("VAULTNOTE_HOME", "~/.vaultnote")
