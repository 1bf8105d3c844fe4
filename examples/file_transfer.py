#!/usr/bin/env python3
"""
Reliable File Transfer Example

Sends a file from one host to another over plain UDP using a reliable
session. Both sides run the same protocol: each sends its input and
receives the peer's, and the session ends once both streams are done.

    # on the receiving host
    python examples/file_transfer.py receive out.bin --port 9001 --peer-port 9000

    # on the sending host
    python examples/file_transfer.py send in.bin --port 9000 --peer-port 9001

The receiver sends nothing, so its stream is just an EOF. Shows:
- Segmentation of the file into packets of at most --mss bytes
- A bounded window of unacknowledged packets (--window)
- Retransmission of lost packets every --timeout milliseconds
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from reliable import (
    BytesSource, BufferSink, ConfigurationError, Endpoint, FileSink, FileSource,
    SessionConfig, UdpChannel
)
import argparse
import hashlib
import logging
import time

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)


def run_endpoint(channel: UdpChannel, source, sink, config: SessionConfig,
                 timeout: float) -> bool:
    """Run one endpoint until the session finishes or timeout expires."""
    with Endpoint(channel, source, sink, config) as endpoint:
        finished = endpoint.wait(timeout=timeout)
        stats = endpoint.session.get_statistics()

    if endpoint.error is not None:
        print(f"Transfer failed: {endpoint.error}")
        return False
    if not finished:
        print(f"Transfer timed out after {timeout:.0f}s")
        return False

    print(f"Packets sent: {stats['packets_sent']}, "
          f"retransmitted: {stats['packets_resent']}, "
          f"acks: {stats['acks_sent']}, "
          f"corrupt dropped: {stats['corrupt_dropped']}")
    return True


def send_file(filepath: str, channel: UdpChannel, config: SessionConfig,
              timeout: float) -> bool:
    """Send a file to the peer."""
    file_size = os.path.getsize(filepath)
    with open(filepath, 'rb') as f:
        file_hash = hashlib.md5(f.read()).hexdigest()

    print(f"Sending file: {filepath}")
    print(f"Size: {file_size} bytes")
    print(f"MD5: {file_hash}")

    start_time = time.time()
    with open(filepath, 'rb') as f:
        ok = run_endpoint(channel, FileSource(f), BufferSink(), config, timeout)

    if ok:
        elapsed = time.time() - start_time
        throughput = file_size / max(elapsed, 1e-6) / 1024
        print(f"Transfer complete!")
        print(f"Time: {elapsed:.2f}s, Throughput: {throughput:.1f} KB/s")
    return ok


def receive_file(filepath: str, channel: UdpChannel, config: SessionConfig,
                 timeout: float) -> bool:
    """Receive the peer's stream into a file."""
    print(f"Receiving into: {filepath}")

    start_time = time.time()
    with open(filepath, 'wb') as f:
        ok = run_endpoint(channel, BytesSource(b""), FileSink(f), config, timeout)

    if ok:
        elapsed = time.time() - start_time
        with open(filepath, 'rb') as f:
            content = f.read()
        print(f"File saved to: {filepath}")
        print(f"Size: {len(content)} bytes, MD5: {hashlib.md5(content).hexdigest()}")
        print(f"Time: {elapsed:.2f}s")
    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reliable File Transfer over UDP")
    parser.add_argument('command', choices=['send', 'receive'], help='Direction')
    parser.add_argument('file', help='File to send, or where to save the received file')
    parser.add_argument('--host', default='0.0.0.0', help='Local address to bind')
    parser.add_argument('--port', type=int, default=9000, help='Local UDP port')
    parser.add_argument('--peer', default='127.0.0.1', help='Peer address')
    parser.add_argument('--peer-port', type=int, default=9001, help='Peer UDP port')
    parser.add_argument('--window', type=int, default=8, help='Window size in packets')
    parser.add_argument('--timeout', type=int, default=1000, help='Retransmission timeout (ms)')
    parser.add_argument('--tick', type=int, default=100, help='Clock tick (ms)')
    parser.add_argument('--mss', type=int, default=500, help='Maximum payload per packet')
    parser.add_argument('--linger', type=int, default=20, help='Ticks to linger after finishing')
    parser.add_argument('--max-time', type=float, default=300.0, help='Give up after this many seconds')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = SessionConfig(
            window_size=args.window,
            timeout_ms=args.timeout,
            tick_ms=args.tick,
            max_segment_size=args.mss,
            linger_ticks=args.linger
        )
    except ConfigurationError as e:
        parser.error(str(e))

    channel = UdpChannel((args.host, args.port), (args.peer, args.peer_port))
    print(f"Session {channel.local_addr[0]}:{channel.local_addr[1]} <-> {args.peer}:{args.peer_port}")

    if args.command == 'send':
        ok = send_file(args.file, channel, config, args.max_time)
    else:
        ok = receive_file(args.file, channel, config, args.max_time)

    sys.exit(0 if ok else 1)
