"""Repository modules for the proposal intake record store."""

__all__ = [
    "solicitation_repo",
    "vendor_repo",
    "proposal_repo",
]
