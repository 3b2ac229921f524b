# Ticket Encoders - build raw print jobs for LAN printers
# ESC/POS for thermal receipt printers, PJL-bracketed PCL for laser/label
# printers, and plain text for "dumb" port 9100 listeners

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ValidationError

# ESC/POS control bytes
ESC = b'\x1b'
GS = b'\x1d'
LF = b'\n'

CMD_INITIALIZE = ESC + b'@'          # ESC @
CMD_ALIGN_LEFT = ESC + b'a\x00'      # ESC a 0
CMD_ALIGN_CENTER = ESC + b'a\x01'    # ESC a 1
CMD_BOLD_ON = ESC + b'E\x01'         # ESC E 1
CMD_BOLD_OFF = ESC + b'E\x00'        # ESC E 0
CMD_PARTIAL_CUT = GS + b'V\x00'      # GS V 0

# PJL / PCL
UEL = ESC + b'%-12345X'              # Universal Exit Language
PCL_RESET = ESC + b'E'
FORM_FEED = b'\f'
CRLF = b'\r\n'

DEFAULT_TITLE = 'ISLAPOS'
PROTOCOLS = ('escpos', 'pcl', 'text', 'raw')


@dataclass
class Ticket:
    """A logical ticket: bold centered title, optional subtitle, body lines"""
    title: str = DEFAULT_TITLE
    subtitle: str = ''
    lines: List[str] = field(default_factory=list)


def encode_escpos(ticket: Ticket) -> bytes:
    """ESC/POS ticket: always starts with ESC @ and ends with GS V 0."""
    parts = [
        CMD_INITIALIZE,
        CMD_ALIGN_CENTER,
        CMD_BOLD_ON,
        f'{ticket.title}\n'.encode('utf-8'),
        CMD_BOLD_OFF,
    ]
    if ticket.subtitle:
        parts.append(f'{ticket.subtitle}\n'.encode('utf-8'))
    parts.append(LF)
    parts.append(CMD_ALIGN_LEFT)
    for line in ticket.lines:
        parts.append(f'{line}\n'.encode('utf-8'))
    parts.append(LF * 3)
    parts.append(CMD_PARTIAL_CUT)
    return b''.join(parts)


def encode_pcl(ticket: Ticket, job_name: str = DEFAULT_TITLE) -> bytes:
    """PCL text page bracketed by PJL JOB/EOJ and UEL on both ends."""
    parts = [
        UEL,
        f'@PJL JOB NAME="{job_name}"\r\n'.encode('ascii', errors='replace'),
        b'@PJL ENTER LANGUAGE=PCL\r\n',
        PCL_RESET,
    ]
    for line in ticket.lines:
        parts.append(line.encode('utf-8') + CRLF)
    parts.append(FORM_FEED)
    parts.append(b'\r\n@PJL EOJ\r\n')
    parts.append(UEL)
    return b''.join(parts)


def encode_plain_text(ticket: Ticket) -> bytes:
    """Plain CRLF text; leading blank lines prime the printer, form feed ejects."""
    parts = [CRLF * 2]
    for line in ticket.lines:
        parts.append(line.encode('utf-8') + CRLF)
    parts.append(CRLF * 2 + FORM_FEED)
    return b''.join(parts)


def printer_test_lines(printer: Dict[str, Any], now_iso: str, heading: str = None) -> List[str]:
    """Body lines identifying the printer a test ticket was sent to."""
    lines = [heading] if heading else []
    lines.extend([
        f"Printer: {printer.get('name') or '(unnamed)'}",
        f"IP: {printer.get('ip')}:{printer.get('port')}",
        f'Time: {now_iso}',
    ])
    return lines


def build_print_data(protocol: str, template: Optional[Dict[str, Any]] = None,
                     raw_base64: Optional[str] = None) -> bytes:
    """Encode a queued print job's template (or raw payload) for its protocol."""
    protocol = (protocol or 'escpos').strip().lower()
    if protocol == 'raw':
        if not raw_base64:
            raise ValidationError('Missing rawBase64')
        try:
            return base64.b64decode(raw_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError('Invalid rawBase64')

    template = template if isinstance(template, dict) else {}
    raw_lines = template.get('lines')
    lines = [str(line) for line in raw_lines] if isinstance(raw_lines, list) else []

    if protocol == 'pcl':
        return encode_pcl(Ticket(lines=lines))
    if protocol == 'text':
        return encode_plain_text(Ticket(lines=lines))

    title = template.get('title')
    subtitle = template.get('subtitle')
    return encode_escpos(Ticket(
        title=title if isinstance(title, str) else DEFAULT_TITLE,
        subtitle=subtitle if isinstance(subtitle, str) else '',
        lines=lines,
    ))


if __name__ == '__main__':
    sample = Ticket(title='ISLAPOS', subtitle='TEST PRINT', lines=['Line 1', 'Line 2'])
    for name, data in (('escpos', encode_escpos(sample)),
                       ('pcl', encode_pcl(sample)),
                       ('text', encode_plain_text(sample))):
        print(f"{name}: {len(data)} bytes")
        print(' '.join(f'{b:02X}' for b in data[:32]))
