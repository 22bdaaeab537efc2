"""
Job queue: enqueue, batch management, dispatch and the polling runner.
"""
