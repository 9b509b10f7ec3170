from .processor import DevicePacketProcessor, PacketOutcome, PacketState

__all__ = ["DevicePacketProcessor", "PacketOutcome", "PacketState"]
