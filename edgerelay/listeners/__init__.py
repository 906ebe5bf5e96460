from .udp import UdpListener, parse_datagram, start_udp_listener

__all__ = ["UdpListener", "parse_datagram", "start_udp_listener"]
