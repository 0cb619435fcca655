"""Package version, read by the CLI and packaging metadata."""

__version__ = "1.0.0"

VERSION_INFO = {
    "name": "ADAPT-Remediate",
    "version": __version__,
    "summary": "Automated remediation pipeline: match, back up, apply, validate, deploy, roll back",
}


def get_version_info() -> dict:
    return dict(VERSION_INFO)
