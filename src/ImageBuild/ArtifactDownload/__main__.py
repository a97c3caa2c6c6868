# === NAVMAP v1 ===
# {
#   "module": "ImageBuild.ArtifactDownload.__main__",
#   "purpose": "Entry point for CLI invocation via python -m.",
#   "sections": []
# }
# === /NAVMAP ===

"""Entry point for CLI invocation via python -m."""

import sys

from ImageBuild.ArtifactDownload.cli import main

if __name__ == "__main__":
    sys.exit(main())
