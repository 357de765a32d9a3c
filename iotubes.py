#!/usr/bin/env python
#===============================================================================
# The Star And Thank Author License (SATA)
#
# Copyright (c) 2020 zTrix(i@ztrix.me)
#
# Project Url: https://github.com/zTrix/zio
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# And wait, the most important, you shall star/+1/like the project(s) in project url
# section above first, and then thank the author(s) in Copyright section.
#
# Here are some suggested ways:
#
#  - Email the authors a thank-you letter, and make friends with him/her/them.
#  - Report bugs or issues.
#  - Tell friends what a wonderful project this is.
#  - And, sure, you can just express thanks in your mind without telling the world.
#
# Contributors of this project by forking have the option to add his/her name and
# forked project url at copyright and project url sections, but shall not delete
# or modify anything else in these two sections.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN
# THE SOFTWARE.
#===============================================================================

__version__ = "0.1.0"
__project__ = "https://github.com/zTrix/zio"

import os
import sys
import errno
import shlex
import shutil
import socket
import asyncio
import datetime
import binascii
import functools
import subprocess
# for console bridge below
import pty
import tty

# iotubes keeps the zero-dependency single-file layout of zio, the event loop comes from asyncio
# every capability call is non-blocking: it either finishes now or returns PENDING after
# arranging for the Context it was given to be woken up, the loop then polls it again

NEW_LINE = b'\n'
DEFAULT_CAPACITY = 8 * 1024

if True:
    # termcolor handled using bytes instead of unicode
    # since termcolor use MIT license, SATA license above should be OK
    ATTRIBUTES = dict(zip(['bold', 'dark', '', 'underline', 'blink', '', 'reverse', 'concealed'], range(1, 9)))
    del ATTRIBUTES['']
    HIGHLIGHTS = dict(zip(['on_grey', 'on_red', 'on_green', 'on_yellow', 'on_blue', 'on_magenta', 'on_cyan', 'on_white'], range(40, 48)))
    COLORS = dict(zip(['grey', 'red', 'green', 'yellow', 'blue', 'magenta', 'cyan', 'white'], range(30, 38)))
    RESET = b'\033[0m'

    def colored(text, color=None, on_color=None, attrs=None):
        fmt_str = b'\033[%dm%s'
        if color is not None: text = fmt_str % (COLORS[color], text)
        if on_color is not None: text = fmt_str % (HIGHLIGHTS[on_color], text)
        if attrs is not None:
            for attr in attrs:
                text = fmt_str % (ATTRIBUTES[attr], text)

        text += RESET
        return text

# -------------------------------------------------
# =====> utility functions <=====

def to_bytes(s):
    '''
    Union{bytes, bytearray, memoryview, str} -> bytes
    str must only contain code points below 256
    '''
    if isinstance(s, str):
        return s.encode('latin-1')   # will raise UnicodeEncodeError if code point larger than 255
    return bytes(s)

def write_debug(f, data, show_time=True, end=b'\n'):
    if not f:
        return
    if isinstance(data, str):
        data = data.encode('latin-1', 'backslashreplace')
    if show_time:
        now = datetime.datetime.now().strftime('[%Y-%m-%d_%H:%M:%S]').encode()
        f.write(now)
        f.write(b' ')
    f.write(data)
    if end:
        f.write(end)
    f.flush()

def ttyraw(fd, when=tty.TCSAFLUSH, echo=False, raw_in=True, raw_out=False):
    mode = tty.tcgetattr(fd)[:]
    if raw_in:
        mode[tty.IFLAG] = mode[tty.IFLAG] & ~(tty.BRKINT | tty.ICRNL | tty.INPCK | tty.ISTRIP | tty.IXON)
        mode[tty.CFLAG] = mode[tty.CFLAG] & ~(tty.CSIZE | tty.PARENB)
        mode[tty.CFLAG] = mode[tty.CFLAG] | tty.CS8
        if echo:
            mode[tty.LFLAG] = mode[tty.LFLAG] & ~(tty.ICANON | tty.IEXTEN | tty.ISIG)
        else:
            mode[tty.LFLAG] = mode[tty.LFLAG] & ~(tty.ECHO | tty.ICANON | tty.IEXTEN | tty.ISIG)
    if raw_out:
        mode[tty.OFLAG] = mode[tty.OFLAG] & ~(tty.OPOST)
    mode[tty.CC][tty.VMIN] = 1
    mode[tty.CC][tty.VTIME] = 0
    tty.tcsetattr(fd, when, mode)

# -------------------------------------------------
# =====> traffic log transforms <=====

# bytes -> (printable) bytes

def COLORED(f, color='cyan', on_color=None, attrs=None):
    return lambda s : colored(f(s), color, on_color, attrs)

def LABELED(f, label):
    '''
    prefix the transformed bytes with a direction tag and the byte count, e.g.

        Received 0x5 bytes:
            00000000: 6865 6c6c 6f                             hello
    '''
    label = to_bytes(label)
    return lambda s : b'%s 0x%x bytes:\n%s' % (label, len(s), f(s))

def REPR(s): return repr(bytes(s)).encode() + b'\r\n'

def HEX(s): return binascii.hexlify(s) + b'\r\n'

def HEXDUMP(byte_buf, width=16, indent=0):
    length = len(byte_buf)
    lines = (length // width) + (length % width != 0)
    ret = []

    printable_low = b' '
    printable_high = b'~'

    hexcode_width = 0

    for lino in range(lines):
        index_begin = lino * width
        line = byte_buf[index_begin:index_begin+width]

        prefix = b'%08x' % index_begin
        hexcode = b''
        printable = b''

        for gi in range(0, len(line), 2):
            gd = line[gi:gi+2]
            hexcode += b' ' + binascii.hexlify(gd)

            for c in (gd[0:1], gd[1:2]):
                if c:
                    printable += c if printable_low <= c <= printable_high else b'.'

        if len(hexcode) > hexcode_width:
            hexcode_width = len(hexcode)
        elif len(hexcode) < hexcode_width:
            hexcode = hexcode.ljust(hexcode_width, b' ')

        ret.append(b'%s%s:%s  %s\n' % (b' ' * indent, prefix, hexcode, printable))
    return b''.join(ret)

HEXDUMP_INDENT4 = functools.partial(HEXDUMP, indent=4)
HEXDUMP_INDENT8 = functools.partial(HEXDUMP, indent=8)

def RAW(s): return bytes(s)
def NONE(s): return b''

# default traffic log format for Tube
RECV_DUMP = LABELED(HEXDUMP_INDENT4, 'Received')
SENT_DUMP = LABELED(HEXDUMP_INDENT4, 'Sent')

# -------------------------------------------------
# =====> errors <=====

class SpawnError(OSError):
    '''
    a process could not be spawned, or its standard streams could not be captured
    '''

class WriteZeroError(OSError):
    '''
    the destination accepted zero bytes while there was still data to send
    '''

class InteractiveClosed(BrokenPipeError):
    '''
    the tube reached EOF during an interactive session, i.e. the remote side vanished
    '''

# -------------------------------------------------
# =====> poll machinery <=====

class _Pending(object):
    def __repr__(self):
        return 'PENDING'

    def __bool__(self):
        return False

# returned by any poll_* method or Operation.poll that cannot make progress yet
PENDING = _Pending()

class Context(object):
    '''
    Context is handed to every poll call. A callee that returns PENDING must first register
    a way to get polled again, using one of:

        cx.wait_readable(fd) / cx.wait_writable(fd)     fd readiness on the event loop
        cx.waker()                                      a callable for in-memory streams to call later
        cx.wake_at(when)                                a deadline in loop.time() units
        cx.wake()                                       poll again on the next loop iteration

    wakers must be called from the event loop thread
    '''

    def __init__(self, loop):
        self.loop = loop
        self.woken = loop.create_future()
        self._readers = []
        self._writers = []
        self._timers = []

    def time(self):
        return self.loop.time()

    def wake(self):
        if not self.woken.done():
            self.woken.set_result(None)

    def waker(self):
        return self.wake

    def wait_readable(self, fd):
        self.loop.add_reader(fd, self.wake)
        self._readers.append(fd)

    def wait_writable(self, fd):
        self.loop.add_writer(fd, self.wake)
        self._writers.append(fd)

    def wake_at(self, when):
        self._timers.append(self.loop.call_at(when, self.wake))

    def release(self):
        for fd in self._readers:
            self.loop.remove_reader(fd)
        for fd in self._writers:
            self.loop.remove_writer(fd)
        for timer in self._timers:
            timer.cancel()
        self._readers = []
        self._writers = []
        self._timers = []

async def drive(operation):
    '''
    poll operation on the running loop until it finishes, return its result
    '''
    loop = asyncio.get_running_loop()
    while True:
        cx = Context(loop)
        try:
            result = operation.poll(cx)
            if result is not PENDING:
                return result
            if cx.woken.done():
                # woken during the poll itself, let other tasks run before polling again
                await asyncio.sleep(0)
            else:
                await cx.woken
        finally:
            cx.release()

class Operation(object):
    '''
    a logical operation made of several non-blocking attempts, all progress is kept on the object
    awaiting an operation drives it on the running loop
    '''

    def poll(self, cx):
        raise NotImplementedError

    def __await__(self):
        return drive(self).__await__()

class Timeout(Operation):
    '''
    attach a deadline to an operation, checked at the top of every poll

    when the deadline passes, on_timeout(operation) becomes the result
    '''

    def __init__(self, operation, timeout, on_timeout):
        self.operation = operation
        self.timeout = timeout
        self.on_timeout = on_timeout
        self.deadline = None

    def poll(self, cx):
        now = cx.time()
        if self.deadline is None:
            self.deadline = now + self.timeout
        if now >= self.deadline:
            return self.on_timeout(self.operation)

        result = self.operation.poll(cx)
        if result is PENDING:
            cx.wake_at(self.deadline)
        return result

# -------------------------------------------------
# =====> duplex stream contract <=====

class Readable(object):
    '''
    poll_read(cx, size) -> bytes | PENDING

    returns 1 to size bytes, or b'' at EOF
    '''

    def poll_read(self, cx, size):
        raise NotImplementedError

    def close(self):
        pass

class Writable(object):
    '''
    poll_write(cx, data) -> int | PENDING, number of bytes accepted
    poll_flush(cx) / poll_shutdown(cx) -> None | PENDING
    '''

    def poll_write(self, cx, data):
        raise NotImplementedError

    def poll_write_vectored(self, cx, buffers):
        # scalar fallback: write the first non-empty buffer
        for buf in buffers:
            if buf:
                return self.poll_write(cx, buf)
        return self.poll_write(cx, b'')

    def is_write_vectored(self):
        return False

    def poll_flush(self, cx):
        return None

    def poll_shutdown(self, cx):
        return self.poll_flush(cx)

    def close(self):
        pass

class BufferedReadable(Readable):
    '''
    poll_fill_buf(cx) -> bytes | PENDING, the lookahead buffer content, b'' at EOF
    consume(amt), drop amt bytes from the front of the lookahead buffer

    the returned bytes stay valid after consume
    '''

    def poll_fill_buf(self, cx):
        raise NotImplementedError

    def consume(self, amt):
        raise NotImplementedError

    def poll_read(self, cx, size):
        buf = self.poll_fill_buf(cx)
        if buf is PENDING:
            return PENDING
        n = min(size, len(buf))
        self.consume(n)
        return bytes(buf[:n])

class DuplexStream(Readable, Writable):
    pass

class BufReader(BufferedReadable, Writable):
    '''
    owns a lookahead buffer on top of any readable, write side is passed through
    '''

    def __init__(self, inner, capacity=DEFAULT_CAPACITY):
        self.inner = inner
        self.capacity = capacity
        self.buffer = bytearray()

    def poll_fill_buf(self, cx):
        if not self.buffer:
            data = self.inner.poll_read(cx, self.capacity)
            if data is PENDING:
                return PENDING
            self.buffer.extend(data)
        return bytes(self.buffer)

    def consume(self, amt):
        del self.buffer[:amt]

    def poll_read(self, cx, size):
        # large reads skip our buffer entirely when it is empty
        if not self.buffer and size >= self.capacity:
            return self.inner.poll_read(cx, size)
        return BufferedReadable.poll_read(self, cx, size)

    def poll_write(self, cx, data):
        return self.inner.poll_write(cx, data)

    def poll_write_vectored(self, cx, buffers):
        return self.inner.poll_write_vectored(cx, buffers)

    def is_write_vectored(self):
        return self.inner.is_write_vectored()

    def poll_flush(self, cx):
        return self.inner.poll_flush(cx)

    def poll_shutdown(self, cx):
        return self.inner.poll_shutdown(cx)

    def close(self):
        self.inner.close()

    def __str__(self):
        return '<BufReader inner=%s, buffered=%d>' % (self.inner, len(self.buffer))

# -------------------------------------------------
# =====> delimiter automaton <=====

def compute_lookup_table(pattern):
    '''
    bytes -> [[int] * 256] * len(pattern)

    table[state][byte] is the next match state after seeing byte in state,
    state == len(pattern) means a full match. Mismatches fall back along the
    failure function of the pattern (its longest proper suffix that is also a prefix),
    so scanning is linear in the input whatever the pattern looks like.
    '''
    if not pattern:
        raise ValueError('pattern must not be empty')

    table = []
    lps = 0         # state the automaton would be in after reading pattern[1:state]
    for state, byte in enumerate(pattern):
        row = list(table[lps]) if state else [0] * 256
        row[byte] = state + 1
        table.append(row)
        if state:
            lps = table[lps][byte]
    return table

class RecvUntil(Operation):
    '''
    read from a buffered source until pattern is seen, return everything read including the pattern
    if EOF comes first, return everything read, a dangling partial match is just data

    bytes after the match stay in the source buffer for later reads
    '''

    def __init__(self, source, pattern):
        self.source = source
        self.pattern = to_bytes(pattern)
        self.table = compute_lookup_table(self.pattern)
        self.state = 0
        self.buffer = bytearray()

    @property
    def result(self):
        '''
        bytes gathered so far, what a timed out or abandoned call has taken from the source
        '''
        return bytes(self.buffer)

    def _scan(self, chunk):
        '''
        return the match end offset in chunk or -1, advancing the automaton state
        '''
        final = len(self.table)
        if final == 1:
            i = chunk.find(self.pattern)
            return i + 1 if i > -1 else -1

        table = self.table
        state = self.state
        for i, byte in enumerate(chunk):
            state = table[state][byte]
            if state == final:
                self.state = state
                return i + 1
        self.state = state
        return -1

    def poll(self, cx):
        while True:
            chunk = self.source.poll_fill_buf(cx)
            if chunk is PENDING:
                return PENDING
            if not chunk:       # EOF
                return self.result

            end = self._scan(chunk)
            if end > -1:
                self.buffer.extend(chunk[:end])
                self.source.consume(end)
                return self.result

            self.buffer.extend(chunk)
            self.source.consume(len(chunk))

# -------------------------------------------------
# =====> basic operations <=====

class Recv(Operation):
    '''
    a single read of up to size bytes
    '''

    def __init__(self, source, size):
        if size <= 0:
            raise ValueError('recv size must be positive, got %r' % size)
        self.source = source
        self.size = size

    def poll(self, cx):
        return self.source.poll_read(cx, self.size)

class WriteAll(Operation):
    def __init__(self, sink, data):
        self.sink = sink
        self.data = to_bytes(data)
        self.written = 0

    def poll(self, cx):
        while self.written < len(self.data):
            n = self.sink.poll_write(cx, self.data[self.written:])
            if n is PENDING:
                return PENDING
            if n == 0:
                raise WriteZeroError(errno.EPIPE, 'failed to write whole buffer, %d of %d bytes written' % (self.written, len(self.data)))
            self.written += n
        return self.written

class Flush(Operation):
    def __init__(self, stream):
        self.stream = stream

    def poll(self, cx):
        return self.stream.poll_flush(cx)

class Shutdown(Operation):
    def __init__(self, stream):
        self.stream = stream

    def poll(self, cx):
        return self.stream.poll_shutdown(cx)

class Send(Operation):
    '''
    write all of data, then flush, result is the number of bytes sent
    '''

    def __init__(self, sink, data):
        self.sink = sink
        self.write = WriteAll(sink, data)
        self.flushing = False

    def poll(self, cx):
        if not self.flushing:
            if self.write.poll(cx) is PENDING:
                return PENDING
            self.flushing = True
        if self.sink.poll_flush(cx) is PENDING:
            return PENDING
        return self.write.written

# -------------------------------------------------
# =====> Tube <=====

class Tube(BufferedReadable, Writable):
    '''
    Tube: expect-like receive/send methods on top of any duplex stream
    '''

    def __init__(self, inner,
        timeout=None,
        logfile=None,
        print_read=RECV_DUMP,
        print_write=SENT_DUMP,
        debug=None,
    ):
        """
        Tube operates at bytes level, str arguments are encoded using latin-1

        example:

        io = Tube(SocketStream(sock))
        io = Tube.process(['cat'])
        io = await Tube.remote(('127.0.0.1', 1337), timeout=5)

        params:
            inner(required): the duplex stream to wrap, a connected socket object is accepted too.
                if it is not buffered already, a BufReader is put in between
            timeout: int | float, seconds. limits recv/recv_line/recv_until, not raw poll_* calls
                nor send operations. None or non-positive means wait forever
            print_read: bool | [COLORED]{NONE, RAW, REPR, HEX, HEXDUMP}, transform and print all the data read
            print_write: bool | [COLORED]{NONE, RAW, REPR, HEX, HEXDUMP}, transform and print all the data sent out
            logfile: where to print traffic data, default to sys.stderr
            debug: if set to a file object(must be opened using binary mode), internal diagnostics go there
        """
        if inner is None:
            raise ValueError('inner stream not provided for Tube')

        if isinstance(inner, socket.socket):
            inner = SocketStream(inner, debug=debug)
        if not isinstance(inner, BufferedReadable):
            inner = BufReader(inner)

        self.inner = inner
        self.print_read = print_read
        self.print_write = print_write
        if logfile is None:
            self.logfile = sys.stderr
        else:
            self.logfile = logfile  # must be opened using 'wb'

        self.debug = debug

        if isinstance(timeout, (int, float)) and timeout > 0:
            self.timeout = timeout
        else:
            self.timeout = None

        # count of bytes at the front of inner's lookahead buffer already printed
        self.read_buf_logged = 0

    @classmethod
    def process(cls, target, cwd=None, env=None, **kwargs):
        '''
        spawn target (cmdline string or argv list) with piped stdin/stdout and wrap it
        '''
        return cls(ProcessStream(target, cwd=cwd, env=env, debug=kwargs.get('debug')), **kwargs)

    @classmethod
    async def remote(cls, target, **kwargs):
        '''
        connect to target (host, port) and wrap the connection
        '''
        stream = await SocketStream.connect(target, debug=kwargs.get('debug'))
        return cls(stream, **kwargs)

    # ---- traffic logging ----

    def log_read(self, byte_buf):
        '''
        bytes -> IO bytes
        '''
        if self.print_read and byte_buf:
            self._write_log(self.read_transform(byte_buf))

    def log_write(self, byte_buf):
        '''
        bytes -> IO bytes
        '''
        if self.print_write and byte_buf:
            self._write_log(self.write_transform(byte_buf))

    def _write_log(self, content):
        try:
            if hasattr(self.logfile, 'buffer'):
                self.logfile.buffer.write(content)
            else:
                self.logfile.write(content)
            self.logfile.flush()
        except (OSError, ValueError) as ex:
            # traffic log failures never fail the transfer
            write_debug(self.debug, b'Tube traffic log failed: %r' % ex)

    @property
    def print_read(self):
        return self.read_transform is not None and self.read_transform is not NONE

    @print_read.setter
    def print_read(self, value):
        if value is True:
            self.read_transform = RAW
        elif value is False or value is None:
            self.read_transform = NONE
        elif callable(value):
            self.read_transform = value
        else:
            raise ValueError('bad print_read value')

    @property
    def print_write(self):
        return self.write_transform is not None and self.write_transform is not NONE

    @print_write.setter
    def print_write(self, value):
        if value is True:
            self.write_transform = RAW
        elif value is False or value is None:
            self.write_transform = NONE
        elif callable(value):
            self.write_transform = value
        else:
            raise ValueError('bad print_write value')

    # ---- duplex stream contract, delegated to inner ----

    def poll_read(self, cx, size):
        if self.read_buf_logged:
            # serve what poll_fill_buf already printed, without printing it twice
            return BufferedReadable.poll_read(self, cx, size)

        data = self.inner.poll_read(cx, size)
        if data is not PENDING:
            self.log_read(data)
        return data

    def poll_fill_buf(self, cx):
        buf = self.inner.poll_fill_buf(cx)
        if buf is PENDING:
            return PENDING

        if len(buf) > self.read_buf_logged:
            self.log_read(bytes(buf[self.read_buf_logged:]))
            self.read_buf_logged = len(buf)
        return buf

    def consume(self, amt):
        self.read_buf_logged = max(self.read_buf_logged - amt, 0)
        self.inner.consume(amt)

    def poll_write(self, cx, data):
        n = self.inner.poll_write(cx, data)
        if n is not PENDING:
            self.log_write(bytes(data[:n]))
        return n

    def poll_write_vectored(self, cx, buffers):
        n = self.inner.poll_write_vectored(cx, buffers)
        if n is PENDING:
            return PENDING

        to_log = n
        for buf in buffers:
            if to_log <= 0:
                break
            self.log_write(bytes(buf[:to_log]))
            to_log -= len(buf)
        return n

    def is_write_vectored(self):
        return self.inner.is_write_vectored()

    def poll_flush(self, cx):
        return self.inner.poll_flush(cx)

    def poll_shutdown(self, cx):
        return self.inner.poll_shutdown(cx)

    # ---- high level operations ----

    def _timed(self, operation, on_timeout):
        if self.timeout is None:
            return operation
        return Timeout(operation, self.timeout, on_timeout)

    async def recv(self, size=4096):
        '''
        read 1 to size bytes, short reads are returned as is
        return b'' on EOF, and also when timeout elapses first
        '''
        return await self._timed(Recv(self, size), lambda op: b'')

    async def recv_line(self):
        '''
        read until b'\\n' (kept in result) or EOF, on timeout return what was read
        '''
        return await self.recv_until(NEW_LINE)

    recvline = recv_line        # for pwntools compatibility
    read_line = recv_line
    readline = recv_line

    async def recv_until(self, pattern):
        '''
        read until pattern found, result ends with pattern
        on EOF or timeout, return everything read so far without raising
        '''
        return await self._timed(RecvUntil(self, pattern), lambda op: op.result)

    recvuntil = recv_until      # for pwntools compatibility
    read_until = recv_until

    async def send(self, data):
        '''
        write all of data and flush, return number of bytes sent
        '''
        return await Send(self, data)

    write = send
    sendall = send      # for socket compatibility

    async def send_line(self, data):
        '''
        write data and a b'\\n'
        '''
        return await Send(self, to_bytes(data) + NEW_LINE)

    sendline = send_line        # for pwntools compatibility
    write_line = send_line

    async def send_after(self, pattern, data):
        '''
        recv_until pattern then send data, return what was received
        '''
        received = await self.recv_until(pattern)
        await self.send(data)
        return received

    sendafter = send_after      # for pwntools compatibility

    async def send_line_after(self, pattern, data):
        '''
        recv_until pattern then send_line data, return what was received

        io.send_line_after(b'name', b'test') against b"Hello, what's your name? "
        returns b"Hello, what's your name", leaving b'? ' to be read
        '''
        received = await self.recv_until(pattern)
        await self.send_line(data)
        return received

    sendlineafter = send_line_after     # for pwntools compatibility
    write_line_after = send_line_after

    async def interactive(self, stdin=None, stdout=None, raw_mode=False):
        '''
        connect the tube with the console until EOF on the console input

        raise InteractiveClosed if the tube hits EOF first
        stdin/stdout may be given as any Readable/Writable, default to fd 0 and fd 1
        raw_mode: set a tty stdin to raw mode for the session to pass all input thru, supporting remote apps as htop/vim
        '''
        console_in = stdin if stdin is not None else FdStream(pty.STDIN_FILENO, None)
        console_out = stdout if stdout is not None else FdStream(None, pty.STDOUT_FILENO)

        parent_tty_mode = None
        if raw_mode and stdin is None and os.isatty(pty.STDIN_FILENO):
            parent_tty_mode = tty.tcgetattr(pty.STDIN_FILENO)   # save mode and restore after interact
            ttyraw(pty.STDIN_FILENO)

        try:
            await Interactive(self, console_in, console_out)
        finally:
            if parent_tty_mode:
                tty.tcsetattr(pty.STDIN_FILENO, tty.TCSAFLUSH, parent_tty_mode)
            if stdin is None:
                console_in.close()
            if stdout is None:
                console_out.close()

    interact = interactive

    async def flush(self):
        await Flush(self)

    async def shutdown(self):
        '''
        flush and notify peer that we have done writing
        '''
        await Shutdown(self)

    send_eof = shutdown

    def close(self):
        '''
        close underlying streams and free all resources
        '''
        self.inner.close()

    def into_inner(self):
        return self.inner

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        try:
            await self.shutdown()
        finally:
            self.close()

    def __str__(self):
        return '<Tube timeout=%s, inner=%s>' % (self.timeout, self.inner)

# -------------------------------------------------
# =====> DebugTube <=====

# what DebugTube does when write_logger falls behind by max_pending bytes
GROW = 'grow'       # keep queueing, no bound
BLOCK = 'block'     # hold back writes to the destination until the logger catches up
DROP = 'drop'       # keep writing, discard mirrored bytes beyond the bound and count them

class DebugTube(BufferedReadable, Writable):
    '''
    acts like `tee`, every byte read from or written to inner is also written to read_logger/write_logger

    the loggers see exactly the bytes the caller sees, in the same order. Read data is held back
    from the caller until read_logger has taken it. Writes are reported as soon as inner accepts
    them, their mirrored copy is queued until write_logger takes it (see overflow policies above).

    loggers are any Writable, the same one may be used for both directions, None disables a direction.
    shutdown flushes the loggers but never shuts them down, callers owning a logger may do that
    after the DebugTube is shut down.
    close() does not flush, mirrored bytes still queued for write_logger are discarded.
    '''

    def __init__(self, inner, read_logger=None, write_logger=None,
        capacity=DEFAULT_CAPACITY,
        max_pending=None,
        overflow=GROW,
        debug=None,
    ):
        if overflow not in (GROW, BLOCK, DROP):
            raise ValueError('bad overflow policy: %r' % overflow)
        if overflow != GROW and (max_pending is None or max_pending <= 0):
            raise ValueError('overflow policy %r requires a positive max_pending' % overflow)

        self.inner = inner
        self.read_logger = read_logger
        self.write_logger = write_logger
        self.capacity = capacity
        self.max_pending = max_pending
        self.overflow = overflow
        self.debug = debug

        self.read_buf = bytearray()     # read from inner, not consumed by caller yet
        self.read_buf_logged = 0        # prefix of read_buf already taken by read_logger
        self.write_buf = bytearray()    # written to inner, not taken by write_logger yet
        self.dropped = 0

    # ---- mirroring ----

    def _mirror_read(self, cx):
        '''
        push the unmirrored tail of read_buf to read_logger, return True if it took anything
        '''
        if self.read_logger is None:
            progress = self.read_buf_logged < len(self.read_buf)
            self.read_buf_logged = len(self.read_buf)
            return progress

        progress = False
        while self.read_buf_logged < len(self.read_buf):
            n = self.read_logger.poll_write(cx, bytes(self.read_buf[self.read_buf_logged:]))
            if n is PENDING:
                break
            if n == 0:
                # stalled logger, keep the bytes and try again on the next round
                cx.wake()
                break
            self.read_buf_logged += n
            progress = True
        return progress

    def _mirror_write(self, cx):
        if self.write_logger is None:
            return
        while self.write_buf:
            n = self.write_logger.poll_write(cx, bytes(self.write_buf))
            if n is PENDING:
                break
            if n == 0:
                cx.wake()
                break
            del self.write_buf[:n]

    def _queue_write(self, data):
        if self.write_logger is None:
            return
        if self.overflow == DROP:
            room = max(self.max_pending - len(self.write_buf), 0)
            if len(data) > room:
                self.dropped += len(data) - room
                write_debug(self.debug, b'DebugTube write_logger behind, dropped %d bytes' % (len(data) - room))
                data = data[:room]
        self.write_buf.extend(data)

    # ---- duplex stream contract ----

    def poll_fill_buf(self, cx):
        while not self.read_buf_logged:
            fetched = False
            eof = False
            room = self.capacity - len(self.read_buf)
            if room > 0:
                data = self.inner.poll_read(cx, room)
                if data is not PENDING:
                    if data:
                        self.read_buf.extend(data)
                        fetched = True
                    else:
                        eof = True

            mirrored = self._mirror_read(cx)
            if self.read_buf_logged:
                break
            if eof and not self.read_buf:
                return b''
            if not (fetched or mirrored):
                return PENDING

        return bytes(self.read_buf[:self.read_buf_logged])

    def consume(self, amt):
        if amt > self.read_buf_logged:
            raise ValueError('consume(%d) beyond the %d bytes available' % (amt, self.read_buf_logged))
        del self.read_buf[:amt]
        self.read_buf_logged -= amt

    # vectored writes use the scalar fallback from Writable

    def poll_write(self, cx, data):
        if not data:
            return 0

        self._mirror_write(cx)

        limit = len(data)
        if self.overflow == BLOCK and self.write_logger is not None:
            room = self.max_pending - len(self.write_buf)
            if room <= 0:
                # _mirror_write has left a wake up behind: the logger is pending or stalled
                return PENDING
            limit = min(limit, room)

        ready = False
        written = 0
        while written < limit:
            n = self.inner.poll_write(cx, data[written:limit])
            if n is PENDING:
                break
            ready = True
            if n == 0:
                break
            written += n

        if written:
            self._queue_write(data[:written])
            self._mirror_write(cx)

        return written if ready else PENDING

    def poll_flush(self, cx):
        ready = True

        if self.write_logger is not None:
            self._mirror_write(cx)
            if self.write_buf or self.write_logger.poll_flush(cx) is PENDING:
                ready = False

        if self.read_logger is not None:
            self._mirror_read(cx)
            if self.read_buf_logged < len(self.read_buf) or self.read_logger.poll_flush(cx) is PENDING:
                ready = False

        if self.inner.poll_flush(cx) is PENDING:
            ready = False

        return None if ready else PENDING

    def poll_shutdown(self, cx):
        # loggers are flushed but not shut down, they may be shared with the caller
        if self.poll_flush(cx) is PENDING:
            return PENDING
        return self.inner.poll_shutdown(cx)

    def close(self):
        if self.write_buf:
            write_debug(self.debug, b'DebugTube closed with %d mirrored bytes not taken by write_logger, discarded' % len(self.write_buf))
            self.write_buf.clear()
        self.inner.close()

    def __str__(self):
        return '<DebugTube inner=%s, read_buf=%d, write_buf=%d>' % (self.inner, len(self.read_buf), len(self.write_buf))

# -------------------------------------------------
# =====> interactive bridge <=====

class Interactive(Operation):
    '''
    pump console input into tube and tube output to the console

    a chunk stays in its source buffer until the destination accepts it, so nothing is lost
    when a destination is not ready. EOF on the console ends the session, EOF on the tube
    raises InteractiveClosed
    '''

    def __init__(self, tube, stdin, stdout):
        self.tube = tube
        self.stdin = stdin if isinstance(stdin, BufferedReadable) else BufReader(stdin)
        self.stdout = stdout

    def _forward(self, cx, source, sink):
        '''
        move bytes while both sides are ready, return the last source buffer seen or PENDING
        '''
        while True:
            buf = source.poll_fill_buf(cx)
            if buf is PENDING or not buf:
                return buf
            n = sink.poll_write(cx, buf)
            if n is PENDING:
                return PENDING
            if n == 0:
                raise WriteZeroError(errno.EPIPE, 'interactive destination accepted zero bytes')
            source.consume(n)

    def poll(self, cx):
        # stdin -> tube
        if self._forward(cx, self.stdin, self.tube) == b'':
            return None

        # tube -> stdout
        if self._forward(cx, self.tube, self.stdout) == b'':
            raise InteractiveClosed(errno.EPIPE, 'tube reached EOF during interactive session')

        return PENDING

# -------------------------------------------------
# =====> file descriptor and process streams <=====

class FdStream(DuplexStream):
    '''
    non-blocking duplex stream over a read fd and a write fd, either may be None

    fds are switched to non-blocking mode. Borrowed fds (closefd=False) get their
    blocking mode restored on close, owned fds are closed.
    '''

    def __init__(self, rfd, wfd, closefd=False, debug=None):
        self.rfd = rfd
        self.wfd = wfd
        self.closefd = closefd
        self.debug = debug
        self.eof_seen = False
        self.eof_sent = False

        self._blocking = {}
        for fd in (rfd, wfd):
            if fd is not None and fd not in self._blocking:
                self._blocking[fd] = os.get_blocking(fd)
                os.set_blocking(fd, False)

    def poll_read(self, cx, size):
        if self.rfd is None:
            raise OSError(errno.EBADF, 'stream is not readable')
        try:
            data = os.read(self.rfd, size)
        except BlockingIOError:
            cx.wait_readable(self.rfd)
            return PENDING
        except OSError as err:
            if err.errno != errno.EIO:      # EIO: pty master after the slave side closed, Linux does this
                raise
            data = b''
        if self.debug: write_debug(self.debug, b'%s.poll_read(%r) -> %r' % (type(self).__name__.encode(), size, data))
        if not data:
            self.eof_seen = True
        return data

    def poll_write(self, cx, data):
        if self.wfd is None:
            raise OSError(errno.EBADF, 'stream is not writable')
        try:
            n = os.write(self.wfd, data)
        except BlockingIOError:
            cx.wait_writable(self.wfd)
            return PENDING
        if self.debug: write_debug(self.debug, b'%s.poll_write(%r) -> %r' % (type(self).__name__.encode(), bytes(data), n))
        return n

    def poll_shutdown(self, cx):
        if self.wfd is not None and not self.eof_sent:
            self.eof_sent = True
            if self.closefd:
                self._release(self.wfd)
                self.wfd = None
        return None

    def _release(self, fd):
        if fd is None or fd not in self._blocking:
            return
        blocking = self._blocking.pop(fd)
        if self.closefd:
            os.close(fd)
        else:
            os.set_blocking(fd, blocking)

    def close(self):
        self._release(self.rfd)
        self._release(self.wfd)
        self.eof_seen = True
        self.eof_sent = True

    def is_eof_seen(self):
        '''
        tell whether we have received EOF from peer end
        '''
        return self.eof_seen

    def is_eof_sent(self):
        '''
        tell whether we have sent EOF to the peer
        '''
        return self.eof_sent

    def is_closed(self):
        return not self._blocking

    def __str__(self):
        return '<FdStream rfd=%s, wfd=%s>' % (self.rfd, self.wfd)

class ProcessStream(FdStream):
    '''
    duplex stream over the stdin/stdout pipes of a child process, stderr is inherited
    '''
    mode = 'process'

    def __init__(self, target, cwd=None, env=None, debug=None, close_delay=0.1):
        """
        params:
            target(required): cmdline string (split using shlex), argv list, or an already spawned subprocess.Popen
                created with stdin=PIPE and stdout=PIPE
            cwd: the working directory to spawn child process
            env: env variables for child process
            close_delay: seconds close() waits for the child to exit before killing it
        """
        if isinstance(target, subprocess.Popen):
            popen = target
            self.args = popen.args
        else:
            popen = self._spawn(target, cwd, env)

        if popen.stdin is None or popen.stdout is None:
            raise SpawnError(errno.EPIPE, 'unable to capture stdin/stdout of child process %r' % (self.args,))

        self.popen = popen
        self.close_delay = close_delay
        FdStream.__init__(self, popen.stdout.fileno(), popen.stdin.fileno(), closefd=False, debug=debug)

    @classmethod
    def from_popen(cls, popen, debug=None, close_delay=0.1):
        return cls(popen, debug=debug, close_delay=close_delay)

    def _spawn(self, target, cwd, env):
        if isinstance(target, str):
            self.args = shlex.split(target)
        else:
            self.args = list(target)
        if not self.args:
            raise ValueError('empty cmdline for process')

        executable = shutil.which(self.args[0])
        if not executable:
            raise SpawnError(errno.ENOENT, 'unable to find executable in path: %s' % self.args)
        self.args[0] = executable

        try:
            return subprocess.Popen(self.args, stdin=subprocess.PIPE, stdout=subprocess.PIPE, cwd=cwd, env=env)
        except OSError as err:
            raise SpawnError(err.errno, 'unable to spawn %s: %s' % (self.args, err.strerror)) from err

    def poll_shutdown(self, cx):
        '''
        close child stdin, the child sees EOF
        '''
        if not self.eof_sent:
            self.eof_sent = True
            self._blocking.pop(self.wfd, None)
            self.popen.stdin.close()
            self.wfd = None
        return None

    def close(self):
        '''
        close pipes and terminate child if still running, nothing can and should be done after closing
        '''
        if self.is_closed():
            return
        self._blocking.clear()
        self.eof_seen = True
        self.eof_sent = True
        for f in (self.popen.stdin, self.popen.stdout):
            try:
                f.close()
            except BrokenPipeError:
                pass    # unflushed file object buffer, we never write through it
        if self.popen.poll() is None:
            self.popen.terminate()
            try:
                self.popen.wait(self.close_delay)
            except subprocess.TimeoutExpired:
                self.popen.kill()
                self.popen.wait()

    def is_closed(self):
        return self.popen.stdout.closed

    @property
    def pid(self):
        return self.popen.pid

    @property
    def exit_status(self):
        return self.popen.poll()

    exit_code = exit_status

    def __str__(self):
        return '<ProcessStream cmdline=%s>' % (self.args,)

# -------------------------------------------------
# =====> socket streams <=====

class Connect(Operation):
    '''
    non-blocking connect of sock to address, result is sock
    '''

    def __init__(self, sock, address):
        sock.setblocking(False)
        self.sock = sock
        self.address = address

    def poll(self, cx):
        err = self.sock.connect_ex(self.address)
        if err in (0, errno.EISCONN):
            return self.sock
        if err in (errno.EINPROGRESS, errno.EALREADY, errno.EWOULDBLOCK, errno.EINTR):
            cx.wait_writable(self.sock.fileno())
            return PENDING
        raise OSError(err, 'connect to %r failed: %s' % (self.address, os.strerror(err)))

class Accept(Operation):
    '''
    non-blocking accept on a listening sock, result is (conn, address)
    '''

    def __init__(self, sock):
        sock.setblocking(False)
        self.sock = sock

    def poll(self, cx):
        try:
            return self.sock.accept()
        except BlockingIOError:
            cx.wait_readable(self.sock.fileno())
            return PENDING

class SocketStream(DuplexStream):
    mode = 'socket'

    def __init__(self, sock, debug=None):
        sock.setblocking(False)
        self.sock = sock
        self.debug = debug
        self.eof_seen = False
        self.eof_sent = False

    @classmethod
    async def connect(cls, target, debug=None):
        '''
        connect to (host, port), trying every address host resolves to
        '''
        loop = asyncio.get_running_loop()
        host, port = target
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)

        last_err = None
        for family, type_, proto, _canonname, address in infos:
            sock = socket.socket(family, type_, proto)
            try:
                await Connect(sock, address)
            except OSError as err:
                sock.close()
                last_err = err
                continue
            return cls(sock, debug=debug)

        if last_err is None:
            last_err = OSError(errno.EADDRNOTAVAIL, 'no address found for %r' % (target,))
        raise last_err

    def fileno(self):
        return self.sock.fileno()

    def poll_read(self, cx, size):
        try:
            data = self.sock.recv(size)
        except BlockingIOError:
            cx.wait_readable(self.sock.fileno())
            return PENDING
        if self.debug: write_debug(self.debug, b'SocketStream.poll_read(%r) -> %r' % (size, data))
        if not data:
            self.eof_seen = True
        return data

    def poll_write(self, cx, data):
        try:
            n = self.sock.send(data)
        except BlockingIOError:
            cx.wait_writable(self.sock.fileno())
            return PENDING
        if self.debug: write_debug(self.debug, b'SocketStream.poll_write(%r) -> %r' % (bytes(data), n))
        return n

    def poll_write_vectored(self, cx, buffers):
        try:
            n = self.sock.sendmsg(buffers)
        except BlockingIOError:
            cx.wait_writable(self.sock.fileno())
            return PENDING
        if self.debug: write_debug(self.debug, b'SocketStream.poll_write_vectored(%r) -> %r' % ([bytes(b) for b in buffers], n))
        return n

    def is_write_vectored(self):
        return hasattr(self.sock, 'sendmsg')

    def poll_shutdown(self, cx):
        if not self.eof_sent:
            self.eof_sent = True
            self.sock.shutdown(socket.SHUT_WR)
            if self.debug: write_debug(self.debug, b'SocketStream.poll_shutdown()')
        return None

    def close(self):
        self.eof_seen = True
        self.eof_sent = True
        self.sock.close()

    def is_eof_seen(self):
        '''
        tell whether we have received EOF from peer end
        '''
        return self.eof_seen

    def is_eof_sent(self):
        '''
        tell whether we have sent EOF to the peer
        '''
        return self.eof_sent

    def is_closed(self):
        return self.sock.fileno() == -1

    def __str__(self):
        return '<SocketStream sock=%r>' % self.sock

class Listener(object):
    '''
    a listening TCP socket whose accept() hands back Tube objects
    '''

    def __init__(self, sock, **tube_kwargs):
        sock.setblocking(False)
        self.sock = sock
        self.tube_kwargs = tube_kwargs

    @classmethod
    def bind(cls, address, backlog=16, **tube_kwargs):
        return cls(socket.create_server(address, backlog=backlog), **tube_kwargs)

    @classmethod
    def listen(cls, **tube_kwargs):
        '''
        bind to 0.0.0.0 on a port chosen by the kernel
        '''
        return cls.bind(('0.0.0.0', 0), **tube_kwargs)

    async def accept(self):
        conn, _addr = await Accept(self.sock)
        return Tube(SocketStream(conn, debug=self.tube_kwargs.get('debug')), **self.tube_kwargs)

    def port(self):
        return self.sock.getsockname()[1]

    def close(self):
        self.sock.close()

    def __str__(self):
        return '<Listener sock=%r>' % self.sock

# -------------------------------------------------
# =====> in-memory streams <=====

class _Channel(object):
    '''
    one direction of an in-memory pipe
    '''

    def __init__(self, capacity):
        self.buffer = bytearray()
        self.capacity = capacity
        self.write_closed = False
        self.read_closed = False
        self.read_waker = None
        self.write_waker = None

    def wake_reader(self):
        waker, self.read_waker = self.read_waker, None
        if waker:
            waker()

    def wake_writer(self):
        waker, self.write_waker = self.write_waker, None
        if waker:
            waker()

class MemoryPipe(DuplexStream):
    '''
    one end of an in-memory duplex pipe, see pipe() and loopback()

    writes block once capacity bytes are queued for the peer. After the peer shuts down
    its write side reads return b'', after the peer closes writes raise BrokenPipeError
    '''

    def __init__(self, incoming, outgoing):
        self.incoming = incoming
        self.outgoing = outgoing

    def poll_read(self, cx, size):
        channel = self.incoming
        if channel.buffer:
            data = bytes(channel.buffer[:size])
            del channel.buffer[:size]
            channel.wake_writer()
            return data
        if channel.write_closed:
            return b''
        channel.read_waker = cx.waker()
        return PENDING

    def poll_write(self, cx, data):
        channel = self.outgoing
        if channel.write_closed or channel.read_closed:
            raise BrokenPipeError(errno.EPIPE, 'write to closed MemoryPipe')
        room = channel.capacity - len(channel.buffer)
        if room <= 0:
            channel.write_waker = cx.waker()
            return PENDING
        n = min(room, len(data))
        channel.buffer.extend(data[:n])
        channel.wake_reader()
        return n

    def poll_shutdown(self, cx):
        self.outgoing.write_closed = True
        self.outgoing.wake_reader()
        return None

    def close(self):
        self.outgoing.write_closed = True
        self.outgoing.wake_reader()
        self.incoming.read_closed = True
        self.incoming.wake_writer()

    def __str__(self):
        return '<MemoryPipe pending_in=%d, pending_out=%d>' % (len(self.incoming.buffer), len(self.outgoing.buffer))

def pipe(capacity=DEFAULT_CAPACITY):
    '''
    return two connected MemoryPipe ends, what one writes the other reads
    '''
    a_to_b = _Channel(capacity)
    b_to_a = _Channel(capacity)
    return MemoryPipe(b_to_a, a_to_b), MemoryPipe(a_to_b, b_to_a)

def loopback(capacity=DEFAULT_CAPACITY):
    '''
    a MemoryPipe reading back its own writes
    '''
    channel = _Channel(capacity)
    return MemoryPipe(channel, channel)

class BytesReader(BufferedReadable):
    '''
    buffered source over fixed bytes

    chunk: limit each fill to this many bytes
    stutter: report PENDING once before each fill, to exercise suspension
    '''

    def __init__(self, data, chunk=None, stutter=False):
        self.data = to_bytes(data)
        self.pos = 0
        self.chunk = chunk
        self.stutter = stutter
        self._primed = False

    def poll_fill_buf(self, cx):
        if self.stutter and not self._primed:
            self._primed = True
            cx.wake()
            return PENDING
        end = len(self.data) if self.chunk is None else min(self.pos + self.chunk, len(self.data))
        return self.data[self.pos:end]

    def consume(self, amt):
        self.pos += amt
        if amt:
            self._primed = False

    def remaining(self):
        return self.data[self.pos:]

class BytesSink(Writable):
    '''
    in-memory Writable collecting everything written to it

    chunk: accept at most this many bytes per write, 0 means accept nothing (a stalled sink)
    stalled: report PENDING until resume() is called
    '''

    def __init__(self, chunk=None, stalled=False):
        self.data = bytearray()
        self.chunk = chunk
        self.stalled = stalled
        self.flushes = 0
        self.shutdowns = 0
        self._waker = None

    def poll_write(self, cx, data):
        if self.stalled:
            self._waker = cx.waker()
            return PENDING
        n = len(data) if self.chunk is None else min(self.chunk, len(data))
        self.data.extend(data[:n])
        return n

    def poll_flush(self, cx):
        if self.stalled:
            self._waker = cx.waker()
            return PENDING
        self.flushes += 1
        return None

    def poll_shutdown(self, cx):
        self.shutdowns += 1
        return self.poll_flush(cx)

    def resume(self):
        self.stalled = False
        waker, self._waker = self._waker, None
        if waker:
            waker()

    def getvalue(self):
        return bytes(self.data)

# -------------------------------------------------
# =====> export useful objects and functions <=====

__all__ = [
    'Tube', 'DebugTube', 'BufReader', 'Interactive',
    'Readable', 'Writable', 'BufferedReadable', 'DuplexStream',
    'PENDING', 'Context', 'Operation', 'Timeout', 'drive',
    'RecvUntil', 'Recv', 'WriteAll', 'Send', 'Flush', 'Shutdown', 'compute_lookup_table',
    'FdStream', 'ProcessStream', 'SocketStream', 'Listener', 'Connect', 'Accept',
    'MemoryPipe', 'pipe', 'loopback', 'BytesReader', 'BytesSink',
    'SpawnError', 'WriteZeroError', 'InteractiveClosed',
    'GROW', 'BLOCK', 'DROP', 'NEW_LINE', 'DEFAULT_CAPACITY',
    'to_bytes', 'colored', 'write_debug', 'ttyraw',
    'HEX', 'REPR', 'RAW', 'NONE', 'HEXDUMP', 'HEXDUMP_INDENT4', 'HEXDUMP_INDENT8',
    'COLORED', 'LABELED', 'RECV_DUMP', 'SENT_DUMP',
]

# vi:set et ts=4 sw=4 ft=python :
