#!/usr/bin/env python3

import asyncio
from iotubes import *

async def main():
    io = await Tube.remote(('github.com', 80), print_read=COLORED(HEXDUMP, 'yellow'), print_write=COLORED(HEXDUMP_INDENT8, 'cyan'))
    await io.send(b'GET / HTTP/1.0\r\n\r\n')
    while await io.recv():
        pass

    io.close()

asyncio.run(main())
