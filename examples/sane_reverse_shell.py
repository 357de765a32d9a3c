#!/usr/bin/env python3

import asyncio
from iotubes import *

# spawn a sane reverse shell using following command
# socat tcp-l:9999,reuseaddr,fork exec:'bash -li',pty,stderr,setsid,sigint,sane

async def main():
    io = await Tube.remote(('127.0.0.1', 9999), print_read=False, print_write=False)
    async with io:
        await io.interact(raw_mode=True)

asyncio.run(main())
