"""Module entrypoint.

Allows: python -m rootbundle ARCHIVE [options] [--] [COMMAND] [ARG...]
(which is what an archive's shebang line runs).
"""

from __future__ import annotations

from .launcher import main

if __name__ == "__main__":
    raise SystemExit(main())
