"""Socket.IO side of ChanSync: the in-memory registry of loaded channels."""
