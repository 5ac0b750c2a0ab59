from .s3_archive import DEFAULT_STORAGE_CLASS, S3ArchiveClient, UploadedPart

__all__ = [
    "DEFAULT_STORAGE_CLASS",
    "S3ArchiveClient",
    "UploadedPart",
]
