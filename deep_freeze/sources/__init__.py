from .google_drive import DriveFile, GoogleDriveClient, ListFolderPage

__all__ = [
    "DriveFile",
    "GoogleDriveClient",
    "ListFolderPage",
]
