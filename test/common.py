import sys
import time
import socket
import threading
from io import BytesIO

from iotubes import *

class EchoServer(threading.Thread):
    '''
    serve one TCP client: send content (bytes or a list of bytes), then echo back whatever
    the client sends until it shuts down its write side, if echo is set
    '''

    def __init__(self, addr=None, content=b'', echo=False, sleep_before=None, sleep_after=None, sleep_between=None):
        threading.Thread.__init__(self, name='ServerSock', daemon=True)
        self.addr = addr or '127.0.0.1'
        self.server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_sock.bind((self.addr, 0))
        self.server_sock.listen(1)
        self.port = self.server_sock.getsockname()[1]
        self.content = content
        self.echo = echo
        self.sleep_before = sleep_before
        self.sleep_after = sleep_after
        self.sleep_between = sleep_between
        self.received = b''

    def run(self):
        peer_sock, _peer_addr = self.server_sock.accept()

        contents = self.content if isinstance(self.content, (list, tuple)) else [self.content]

        if self.sleep_before:
            time.sleep(self.sleep_before)

        try:
            for item in contents:
                peer_sock.sendall(item)

                if self.sleep_between:
                    time.sleep(self.sleep_between)

            while self.echo:
                data = peer_sock.recv(4096)
                if not data:
                    break
                self.received += data
                peer_sock.sendall(data)

            if self.sleep_after:
                time.sleep(self.sleep_after)
        except OSError as ex:
            print('EchoServer: %r' % ex, file=sys.stderr)
        finally:
            peer_sock.close()
            self.server_sock.close()

    def target_addr(self):
        return (self.addr, self.port)

def quiet(stream, **kwargs):
    '''
    Tube over stream with traffic log captured in a BytesIO, returns (tube, logfile)
    '''
    logfile = kwargs.pop('logfile', None) or BytesIO()
    kwargs.setdefault('print_read', False)
    kwargs.setdefault('print_write', False)
    return Tube(stream, logfile=logfile, **kwargs), logfile

class BrokenLog(object):
    '''
    a logfile whose every write fails
    '''

    def write(self, data):
        raise OSError(28, 'No space left on device')

    def flush(self):
        pass

class VectoredWrite(Operation):
    '''
    a single poll_write_vectored call on stream, result is the count accepted
    '''

    def __init__(self, stream, buffers):
        self.stream = stream
        self.buffers = buffers

    def poll(self, cx):
        return self.stream.poll_write_vectored(cx, self.buffers)
