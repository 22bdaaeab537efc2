"""
omnicrm background job pipeline.

Ingests Gmail and Calendar data, normalizes it into interactions, links
contacts, and generates embeddings and insights through a polling runner.
"""
