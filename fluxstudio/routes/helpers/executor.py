import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial

# Shared pool for the synchronous Supabase, Stripe and fal.ai clients
executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="fluxstudio-io")


async def run_sync(func, *args, **kwargs):
    """Run a blocking call off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))
