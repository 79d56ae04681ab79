"""Allow running as python -m notesync."""

from .main import main

main()
