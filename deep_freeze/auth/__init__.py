from .google_drive import GoogleDriveAuthProvider

__all__ = [
    "GoogleDriveAuthProvider",
]
