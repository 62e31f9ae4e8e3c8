"""Resource kinds shipped with cairn.

Importing a module here registers its kinds, so destroy can delete their
records in a later process.
"""

from cairn.resources.fs import File, Folder, TemplateFile

__all__ = ["File", "Folder", "TemplateFile"]
