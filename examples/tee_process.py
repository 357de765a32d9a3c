#!/usr/bin/env python3

import asyncio
from iotubes import *

# mirror everything crossing a `cat` process into two in-memory sinks

async def main():
    read_log, write_log = BytesSink(), BytesSink()
    io = Tube(DebugTube(ProcessStream('cat'), read_logger=read_log, write_logger=write_log), print_read=False, print_write=False)
    async with io:
        await io.send_line(b'abc')
        await io.recv_line()
    print('read:', read_log.getvalue(), 'write:', write_log.getvalue())

asyncio.run(main())
