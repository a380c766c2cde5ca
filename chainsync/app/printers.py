import asyncio
import os
from dataclasses import dataclass, field
from typing import Literal, Optional

from .logs import json_log
from .receipts import ReceiptPrintJob, render_receipt

ConnectionType = Literal["usb", "serial", "bluetooth", "network", "keyboard-emulation", "unknown"]

# ESC/POS framing.
ESC_INIT = b"\x1b@"
FEED_AND_CUT = b"\n\n\n\x1dV\x00"


@dataclass
class PeripheralCapability:
    type: Literal["SCANNER", "PRINTER"]
    connection: ConnectionType
    is_available: bool = True
    vendor: Optional[str] = None
    model: Optional[str] = None
    last_checked: int = 0
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PrinterProfile:
    id: str
    label: str
    supports_graphics: bool
    paper_width_mm: int
    connection: ConnectionType
    vendor_hint: Optional[str] = None
    model_hint: Optional[str] = None
    device_path: Optional[str] = None
    is_available: bool = True

    @property
    def columns(self) -> int:
        # 58mm rolls print 32 columns of font A, 80mm print 48.
        return 48 if self.paper_width_mm >= 80 else 32


DEFAULT_PRINTER_PROFILE = PrinterProfile(
    id="thermal-58mm",
    label="Thermal Receipt Printer (58mm)",
    supports_graphics=False,
    paper_width_mm=58,
    connection="usb",
)


def printer_profile_from_capability(capability: PeripheralCapability) -> Optional[PrinterProfile]:
    if capability.type != "PRINTER":
        return None
    meta = capability.metadata or {}
    if capability.vendor:
        pid = f"{capability.vendor}-{capability.model or 'generic'}"
    else:
        pid = f"printer-{capability.connection}"
    if capability.vendor and capability.model:
        label = f"{capability.vendor} {capability.model}"
    else:
        label = "Detected Printer"
    try:
        width = int(meta.get("paperWidthMm") or 58)
    except (TypeError, ValueError):
        width = 58
    return PrinterProfile(
        id=pid,
        label=label,
        supports_graphics=bool(meta.get("supportsGraphics")),
        paper_width_mm=width or 58,
        connection=capability.connection,
        vendor_hint=capability.vendor,
        model_hint=capability.model,
        device_path=meta.get("devicePath"),
        is_available=capability.is_available,
    )


class ReceiptPrinterAdapter:
    id = "abstract"
    label = "Abstract printer"

    def matches(self, profile: PrinterProfile) -> bool:
        raise NotImplementedError

    async def print(self, job: ReceiptPrintJob, profile: PrinterProfile = DEFAULT_PRINTER_PROFILE) -> None:
        raise NotImplementedError


class EscPosPrinterAdapter(ReceiptPrinterAdapter):
    id = "escpos"
    label = "ESC/POS Thermal Printer"

    def matches(self, profile: PrinterProfile) -> bool:
        return bool(profile.device_path) and profile.is_available and profile.connection in {"usb", "serial", "network"}

    def _write(self, path: str, data: bytes):
        with open(path, "wb") as f:
            f.write(data)

    async def print(self, job: ReceiptPrintJob, profile: PrinterProfile = DEFAULT_PRINTER_PROFILE) -> None:
        text = render_receipt(job, width=profile.columns)
        data = ESC_INIT + text.encode("cp437", errors="replace") + FEED_AND_CUT
        await asyncio.to_thread(self._write, profile.device_path, data)


class FileExportAdapter(ReceiptPrinterAdapter):
    """Fallback: drop the receipt as <receipt_number>.txt so it can be reprinted later."""

    id = "file-export"
    label = "Receipt File Export"

    def __init__(self, directory: str):
        self.directory = directory

    def matches(self, profile: PrinterProfile) -> bool:
        return True

    def path_for(self, job: ReceiptPrintJob) -> str:
        return os.path.join(self.directory, f"{job.receipt_number}.txt")

    def _write(self, path: str, text: str):
        os.makedirs(self.directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)

    async def print(self, job: ReceiptPrintJob, profile: PrinterProfile = DEFAULT_PRINTER_PROFILE) -> None:
        await asyncio.to_thread(self._write, self.path_for(job), render_receipt(job, width=profile.columns))


def get_printer_adapter(profile: PrinterProfile, adapters: list[ReceiptPrinterAdapter]) -> ReceiptPrinterAdapter:
    for adapter in adapters:
        if adapter.matches(profile):
            return adapter
    raise LookupError(f"no printer adapter for profile {profile.id}")


class ReceiptPrinter:
    def __init__(self, adapters: list[ReceiptPrinterAdapter], profile: PrinterProfile = DEFAULT_PRINTER_PROFILE):
        self.adapters = adapters
        self.profile = profile
        self.is_printing = False
        self.last_error: Optional[str] = None

    async def print_receipt(self, job: ReceiptPrintJob) -> str:
        """Returns the adapter id used. Failures are recorded and re-raised."""
        adapter = get_printer_adapter(self.profile, self.adapters)
        self.is_printing = True
        self.last_error = None
        try:
            await adapter.print(job, self.profile)
        except Exception as ex:
            self.last_error = str(ex)
            json_log("error", "receipt.print_failed", adapter=adapter.id, receipt_number=job.receipt_number, error=str(ex))
            raise
        finally:
            self.is_printing = False
        json_log("info", "receipt.printed", adapter=adapter.id, receipt_number=job.receipt_number)
        return adapter.id
