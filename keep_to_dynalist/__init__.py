"""
Utility package for migrating a Google Keep takeout into the Dynalist inbox.

Each takeout JSON file becomes one inbox item: labels turn into hashtags,
attachments are uploaded to Cloudflare R2 and linked from the item note, and
delivery is paced and retried so the Dynalist rate limits are respected.
"""
__all__ = [
    "config",
    "dynalist_client",
    "parser",
    "exporter",
    "storage",
]
