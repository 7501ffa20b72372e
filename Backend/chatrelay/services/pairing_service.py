import base64
import io

import qrcode


def render_pairing_image(code: str) -> str:
    """Render a pairing code as a scannable PNG data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(code)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")

    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode()}"
