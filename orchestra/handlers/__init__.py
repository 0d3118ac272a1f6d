"""Background handlers: worker pool, cron trigger manager, collection event dispatcher.

Each runs as asyncio task(s) started and stopped from the application lifespan.
"""
