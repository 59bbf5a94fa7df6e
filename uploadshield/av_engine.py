from dataclasses import dataclass
import logging
import socket
import struct

logger = logging.getLogger("uploadshield.av_engine")

DEFAULT_TIMEOUT_SECONDS = 5.0
CHUNK_SIZE = 1024 * 1024


@dataclass
class EngineResult:
    status: str
    detail: str


class ClamAVClient:
    """Minimal clamd INSTREAM client."""

    def __init__(self, host: str = "clamav", port: int = 3310, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.timeout = timeout

    def scan(self, content: bytes) -> EngineResult:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
                sock.sendall(b"zINSTREAM\0")
                for start in range(0, len(content), CHUNK_SIZE):
                    chunk = content[start:start + CHUNK_SIZE]
                    # clamd expects a 4-byte big-endian length before each chunk.
                    sock.sendall(struct.pack(">I", len(chunk)))
                    sock.sendall(chunk)
                sock.sendall(struct.pack(">I", 0))
                response = sock.recv(4096).decode("utf-8", errors="replace").strip("\0 \n")
        except OSError as exc:
            logger.warning("ClamAV connection failed (host=%s port=%s): %s", self.host, self.port, exc)
            return EngineResult(status="error", detail="ClamAV unavailable")

        if "FOUND" in response:
            signature = response.split("FOUND")[0].split(":")[-1].strip()
            return EngineResult(status="malicious", detail=signature)
        if response.endswith("OK"):
            return EngineResult(status="clean", detail="No signature matched")
        return EngineResult(status="error", detail=f"Unexpected response: {response}")
