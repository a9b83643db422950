from piclib.db.base import Base  # noqa: F401
from piclib.models.library import File, Folder, Library  # noqa: F401

__all__ = [
    "Base",
    "Library",
    "Folder",
    "File",
]
