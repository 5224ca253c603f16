import io
from urllib.parse import urlencode
import qrcode


def redeem_url(base_url: str, code: str) -> str:
    return f"{base_url.rstrip('/')}/redeem?{urlencode({'code': code})}"


def make_qr_bytes(url: str, box_size: int = 10) -> bytes:
    """Return QR PNG bytes for the provided URL."""
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=box_size, border=4)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image()
    buf = io.BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()
