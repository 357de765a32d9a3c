#!/usr/bin/env python3
import socket
import asyncio
import subprocess
import unittest
from io import BytesIO

from iotubes import *

from common import EchoServer, quiet, BrokenLog, VectoredWrite

class TubeTestCase(unittest.IsolatedAsyncioTestCase):

    async def test_loopback_line(self):
        io, _ = quiet(loopback())
        self.assertEqual(await io.send_line(b'hello world'), 12)
        self.assertEqual(await io.recv_line(), b'hello world\n')

        await io.send_line('latin-1 \xe9')
        self.assertEqual(await io.recvline(), b'latin-1 \xe9\n')

    async def test_recv_size(self):
        a, b = pipe()
        io, _ = quiet(a)
        await WriteAll(b, b'abcdef')

        self.assertEqual(await io.recv(4), b'abcd')
        self.assertEqual(await io.recv(), b'ef')

        with self.assertRaises(ValueError):
            await io.recv(0)

        await Shutdown(b)
        self.assertEqual(await io.recv(), b'')

    async def test_recv_timeout(self):
        a, b = pipe()
        io, _ = quiet(a, timeout=0.2)
        self.assertEqual(await io.recv(), b'')

        await WriteAll(b, b'abc')
        self.assertEqual(await io.recv_until(b'xyz'), b'abc')
        # bytes taken by the timed out call are not replayed
        await WriteAll(b, b'defxyz')
        self.assertEqual(await io.recv_until(b'xyz'), b'defxyz')

        await WriteAll(b, b'no newline')
        self.assertEqual(await io.recv_line(), b'no newline')

    async def test_send_line_after(self):
        a, b = pipe()
        io, _ = quiet(a)
        peer, _ = quiet(b)

        async def echo_peer():
            await peer.send(b"Hello, what's your name? ")
            await peer.send(await peer.recv_line())

        task = asyncio.ensure_future(echo_peer())
        self.assertEqual(await io.send_line_after(b'name', b'test'), b"Hello, what's your name")
        self.assertEqual(await io.recv_line(), b'? test\n')
        await task

    async def test_send_after(self):
        io, _ = quiet(loopback())
        await io.send(b'login: ')
        self.assertEqual(await io.sendafter(b': ', b'root'), b'login: ')
        self.assertEqual(await io.recv(), b'root')

    async def test_write_zero(self):
        io, _ = quiet(BytesSink(chunk=0))
        with self.assertRaises(WriteZeroError):
            await io.send(b'x')

    async def test_default_log_format(self):
        logfile = BytesIO()
        io = Tube(loopback(), logfile=logfile)
        await io.send(b'hi')
        self.assertEqual(logfile.getvalue(), b'Sent 0x2 bytes:\n    00000000: 6869  hi\n')

        await io.recv(2)
        self.assertEqual(logfile.getvalue(), b'Sent 0x2 bytes:\n    00000000: 6869  hi\nReceived 0x2 bytes:\n    00000000: 6869  hi\n')

    async def test_log_each_byte_once(self):
        a, b = pipe()
        io, logfile = quiet(a, print_read=True, print_write=HEX)

        await io.send(b'hi')
        self.assertEqual(logfile.getvalue(), b'6869\r\n')

        await WriteAll(b, b'hello world\n')
        self.assertEqual(await io.recv(5), b'hello')
        self.assertEqual(logfile.getvalue(), b'6869\r\nhello')

        self.assertEqual(await io.recv_until(b'or'), b' wor')
        self.assertEqual(await io.recv(1), b'l')
        self.assertEqual(await io.recv_line(), b'd\n')
        self.assertEqual(logfile.getvalue(), b'6869\r\nhello world\n')

    async def test_broken_logfile(self):
        debug = BytesIO()
        io = Tube(loopback(), logfile=BrokenLog(), print_read=True, print_write=True, debug=debug)
        await io.send_line(b'still works')
        self.assertEqual(await io.recv_line(), b'still works\n')
        self.assertIn(b'Tube traffic log failed', debug.getvalue())

    async def test_bad_print_value(self):
        with self.assertRaises(ValueError):
            Tube(loopback(), print_read=42)
        with self.assertRaises(ValueError):
            Tube(None)

    async def test_context_manager(self):
        a, b = pipe()
        async with Tube(a, print_read=False, print_write=False) as io:
            await io.send(b'bye')
        self.assertEqual(await Recv(b, 10), b'bye')
        self.assertEqual(await Recv(b, 10), b'')
        with self.assertRaises(BrokenPipeError):
            await WriteAll(b, b'too late')

    async def test_into_inner(self):
        stream = BytesReader(b'abc')
        io, _ = quiet(stream)
        self.assertIs(io.into_inner(), stream)

    def test_aliases(self):
        self.assertIs(Tube.recvline, Tube.recv_line)
        self.assertIs(Tube.recvuntil, Tube.recv_until)
        self.assertIs(Tube.sendline, Tube.send_line)
        self.assertIs(Tube.sendlineafter, Tube.send_line_after)
        self.assertIs(Tube.interact, Tube.interactive)

    # ------------------- process tubes ---------------------

    async def test_process_cat(self):
        logfile = BytesIO()
        io = Tube.process('cat', logfile=logfile, print_read=True, print_write=False)
        self.assertEqual(io.inner.inner.mode, 'process')

        await io.write_line(b'____')
        await io.send_eof()
        self.assertEqual(await io.recv(), b'____\n')
        self.assertEqual(await io.recv(), b'')
        self.assertEqual(logfile.getvalue(), b'____\n')

        io.close()
        self.assertIsNotNone(io.inner.inner.exit_status)

    async def test_process_hex_read(self):
        logfile = BytesIO()
        io = Tube.process(['cat'], logfile=logfile, print_read=HEX, print_write=False)
        await io.send_line(b'____')
        self.assertEqual(await io.recv_line(), b'____\n')
        self.assertEqual(logfile.getvalue(), b'5f5f5f5f0a\r\n')
        io.close()

    async def test_process_tty(self):
        io, _ = quiet(ProcessStream('tty'))
        self.assertEqual((await io.recv_line()).strip(), b'not a tty')
        io.close()

    def test_spawn_error(self):
        with self.assertRaises(SpawnError):
            ProcessStream('/nonexistent/iotubes-no-such-program')

        popen = subprocess.Popen(['cat'], stdin=subprocess.PIPE)
        try:
            with self.assertRaises(SpawnError):
                ProcessStream.from_popen(popen)
        finally:
            popen.stdin.close()
            popen.wait()

    async def test_from_popen(self):
        popen = subprocess.Popen(['cat'], stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        io, _ = quiet(ProcessStream.from_popen(popen))
        await io.send_line('adopted')
        self.assertEqual(await io.recv_line(), b'adopted\n')
        io.close()
        self.assertIsNotNone(popen.returncode)

    # ------------------- socket tubes ---------------------

    async def test_socket_io(self):
        server = EchoServer(content=[b'hello world\n', b'\xe4\xbd\xa0\xe5\xa5\xbd\xe4\xb8\x96\xe7\x95\x8c\n'])
        server.start()
        logfile = BytesIO()

        io = await Tube.remote(server.target_addr(), logfile=logfile, print_read=True, print_write=False)
        self.assertEqual(io.inner.inner.mode, 'socket')

        self.assertEqual(await io.recv(5), b'hello')
        self.assertEqual(logfile.getvalue(), b'hello')

        self.assertEqual(await io.recv_until(b'\x00'), b' world\n\xe4\xbd\xa0\xe5\xa5\xbd\xe4\xb8\x96\xe7\x95\x8c\n')
        self.assertEqual(logfile.getvalue(), 'hello world\n你好世界\n'.encode())
        io.close()

    async def test_socket_read_until_timeout(self):
        server = EchoServer(content=[b'Welcome to Math World\n', b'input:', b'received\n'], sleep_before=0.5, sleep_between=0.5)
        server.start()

        io, _ = quiet(await SocketStream.connect(server.target_addr()), timeout=0.3)
        self.assertEqual(await io.recv_until(b'input:'), b'')

        io.timeout = 5
        self.assertEqual(await io.recv_until(b'input:'), b'Welcome to Math World\ninput:')
        self.assertEqual(await io.recv_line(), b'received\n')
        io.close()

    async def test_socket_echo(self):
        server = EchoServer(content=b"Hello, what's your name? ", echo=True)
        server.start()

        io, _ = quiet(await SocketStream.connect(server.target_addr()))
        self.assertEqual(await io.sendlineafter('name', 'test'), b"Hello, what's your name")
        self.assertEqual(await io.recvline(), b'? test\n')

        await io.shutdown()
        self.assertEqual(await io.recv(), b'')
        io.close()
        server.join(5)
        self.assertEqual(server.received, b'test\n')

    async def test_attach_socket(self):
        server = EchoServer(content=[b'Welcome to Math World\n', b'input:', b'received\n'], sleep_between=0.2)
        server.start()

        s = socket.create_connection(server.target_addr())
        s.recv(22)

        io, logfile = quiet(s, print_read=True)
        self.assertEqual(await io.read_until(b'input:'), b'input:')
        self.assertEqual(await io.read_line(), b'received\n')
        self.assertEqual(logfile.getvalue(), b'input:received\n')
        io.close()

    async def test_connect_refused(self):
        s = socket.socket()
        s.bind(('127.0.0.1', 0))
        port = s.getsockname()[1]
        s.close()

        with self.assertRaises(OSError):
            await Tube.remote(('127.0.0.1', port))

    async def test_listener(self):
        listener = Listener.bind(('127.0.0.1', 0), print_read=False, print_write=False, logfile=BytesIO())
        self.assertNotEqual(listener.port(), 0)

        accepted = asyncio.ensure_future(listener.accept())
        client, _ = quiet(await SocketStream.connect(('127.0.0.1', listener.port())))
        server = await accepted

        await client.send_line(b'ping')
        self.assertEqual(await server.recv_line(), b'ping\n')
        await server.send_line(b'pong')
        self.assertEqual(await client.recv_line(), b'pong\n')

        client.close()
        self.assertEqual(await server.recv(), b'')
        server.close()
        listener.close()

    async def test_listen_any_port(self):
        listener = Listener.listen(print_read=False, print_write=False)
        accepted = asyncio.ensure_future(listener.accept())
        client, _ = quiet(await SocketStream.connect(('127.0.0.1', listener.port())))
        server = await accepted
        await server.send(b'hi')
        self.assertEqual(await client.recv(), b'hi')
        client.close()
        server.close()
        listener.close()

    async def test_vectored_write_logs_each_buffer(self):
        io, logfile = quiet(loopback(), print_write=True)
        self.assertFalse(io.is_write_vectored())

        self.assertEqual(await VectoredWrite(io, [b'', b'ab', b'cd']), 2)
        self.assertEqual(logfile.getvalue(), b'ab')
        self.assertEqual(await io.recv(), b'ab')

    async def test_socket_vectored_write(self):
        s1, s2 = socket.socketpair()
        debug = BytesIO()
        io, logfile = quiet(SocketStream(s1, debug=debug), print_write=True)
        peer, _ = quiet(s2)
        self.assertTrue(io.is_write_vectored())

        self.assertEqual(await VectoredWrite(io, [b'', b'ab', b'cd']), 4)
        self.assertEqual(logfile.getvalue(), b'abcd')
        self.assertIn(b'SocketStream.poll_write_vectored', debug.getvalue())
        self.assertEqual(await peer.recv_until(b'cd'), b'abcd')
        io.close()
        peer.close()

    async def test_socket_eof_flags(self):
        s1, s2 = socket.socketpair()
        stream = SocketStream(s1)
        io, _ = quiet(stream)
        self.assertFalse(stream.is_eof_seen())
        self.assertFalse(stream.is_eof_sent())

        await io.shutdown()
        self.assertTrue(stream.is_eof_sent())
        self.assertEqual(s2.recv(16), b'')

        s2.close()
        self.assertEqual(await io.recv(), b'')
        self.assertTrue(stream.is_eof_seen())
        io.close()
        self.assertTrue(stream.is_closed())

    async def test_process_eof_flags(self):
        stream = ProcessStream('cat')
        io, _ = quiet(stream)
        await io.send(b'x')
        await io.send_eof()
        self.assertTrue(stream.is_eof_sent())
        self.assertFalse(stream.is_eof_seen())

        self.assertEqual(await io.recv_until(b'\n'), b'x')
        self.assertTrue(stream.is_eof_seen())
        io.close()

if __name__ == '__main__':
    unittest.main(verbosity=2, failfast=True)
