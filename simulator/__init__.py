# Reliable Stream - Network Simulator
from .network import LossyLink, SimulatedChannel, PacketCapture, NetworkStats

__all__ = ["LossyLink", "SimulatedChannel", "PacketCapture", "NetworkStats"]
