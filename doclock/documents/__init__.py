"""
DocLock Folders & Documents.

Folder tree with depth-limited nesting, PDF/image documents stored as blobs,
and the "Shared" pseudo-folder for documents other users shared with you.
Blob storage: {storage.blob_root}/users/{owner_id}/...
"""
