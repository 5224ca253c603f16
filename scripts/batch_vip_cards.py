#!/usr/bin/env python3
import os, sys, csv, io, base64
import argparse
import pathlib
import requests
from PIL import Image, ImageDraw, ImageFont

# Batch-generate VIP codes through /admin/codes/generate and print QR cards
# Outputs: PNGs, CSV, and optional A4 PDF sheet with cards

CARD_TITLES = {
    'VIP_PREVIEW': 'VIP Preview: read the first chapters early',
    'VIP_BONUS': 'VIP Bonus: unlock the Agent Charter Pack',
    'VIP_LAUNCH': 'VIP Launch: join the launch event',
    'PARTNER': 'Partner Access',
    'MEDIA': 'Media Access',
    'INFLUENCER': 'Creator Access',
}


def parse_args():
    p = argparse.ArgumentParser(description='Batch generate VIP code cards using the admin API')
    p.add_argument('--base-url', default=os.environ.get('BASE_URL', 'http://localhost:5000'), help='Service base URL')
    p.add_argument('--admin-key', default=os.environ.get('ADMIN_API_KEY'), help='X-Admin-Key (env ADMIN_API_KEY)')
    p.add_argument('--type', default=os.environ.get('CODE_TYPE', 'VIP_PREVIEW'), choices=sorted(CARD_TITLES), help='code type')
    p.add_argument('--count', type=int, default=int(os.environ.get('COUNT', '10')), help='number of codes to issue')
    p.add_argument('--max-redemptions', type=int, default=1, help='redemptions allowed per code')
    p.add_argument('--valid-until', default=None, help='ISO-8601 expiry (UTC)')
    p.add_argument('--batch', default=os.environ.get('BATCH_ID') or 'batch', help='batch id/prefix for output folder')
    p.add_argument('--out', default='out', help='output directory root (default: out)')
    p.add_argument('--no-pdf', action='store_true', help='skip generating a combined A4 PDF sheet')
    return p.parse_args()


def ensure_dir(p: pathlib.Path):
    p.mkdir(parents=True, exist_ok=True)


def generate_codes(base_url: str, key: str, code_type: str, count: int, max_redemptions: int, valid_until, batch: str):
    url = f"{base_url.rstrip('/')}/admin/codes/generate"
    headers = {'X-Admin-Key': key, 'Accept': 'application/json'}
    body = {
        'type': code_type,
        'count': count,
        'max_redemptions': max_redemptions,
        'valid_until': valid_until,
        'description': f'card batch {batch}',
    }
    r = requests.post(url, headers=headers, json=body, timeout=60)
    if r.status_code != 201:
        raise RuntimeError(f"generate failed {r.status_code}: {r.text[:200]}")
    return r.json()['codes']


def fetch_qr(base_url: str, key: str, code: str):
    url = f"{base_url.rstrip('/')}/admin/codes/{code}/qr"
    r = requests.get(url, headers={'X-Admin-Key': key, 'Accept': 'application/json'}, timeout=30)
    if r.status_code != 200:
        raise RuntimeError(f"qr failed {r.status_code}: {r.text[:200]}")
    data = r.json()
    return data['redeem_url'], base64.b64decode(data['qr_png_b64'])


def _centered(draw, W, y, text, font, fill):
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    draw.text(((W - (right - left)) // 2, y), text, fill=fill, font=font)


def make_card(qr_png_bytes: bytes, title: str, code: str, footer: str, card_px=(800, 1000)) -> Image.Image:
    # Compose a printable card PNG with QR and text
    W, H = card_px
    bg = Image.new('RGB', (W, H), color=(255, 255, 255))
    draw = ImageDraw.Draw(bg)
    qr = Image.open(io.BytesIO(qr_png_bytes)).convert('RGB')
    qr_size = min(W - 120, int(H * 0.5))
    qr = qr.resize((qr_size, qr_size), Image.LANCZOS)
    qr_y = 200
    bg.paste(qr, ((W - qr_size) // 2, qr_y))
    try:
        font_title = ImageFont.truetype('Arial.ttf', 36)
        font_code = ImageFont.truetype('Arial.ttf', 64)
        font_foot = ImageFont.truetype('Arial.ttf', 22)
    except OSError:
        font_title = ImageFont.load_default()
        font_code = ImageFont.load_default()
        font_foot = ImageFont.load_default()
    _centered(draw, W, 30, title, font_title, (0, 0, 0))
    _centered(draw, W, 100, code, font_code, (20, 20, 20))
    _centered(draw, W, qr_y + qr_size + 40, footer, font_foot, (60, 60, 60))
    return bg


def save_pdf_sheet(images: list[Image.Image], out_pdf: pathlib.Path, cols=2, rows=3, margin=50):
    if not images:
        return
    # A4 at 300 DPI
    page_w, page_h = 2480, 3508
    card_w = (page_w - margin * (cols + 1)) // cols
    card_h = (page_h - margin * (rows + 1)) // rows
    per_page = cols * rows
    pages = []
    for start in range(0, len(images), per_page):
        page = Image.new('RGB', (page_w, page_h), color=(255, 255, 255))
        for n, img in enumerate(images[start:start + per_page]):
            r, c = divmod(n, cols)
            card = img.resize((card_w, card_h), Image.LANCZOS)
            page.paste(card, (margin + c * (card_w + margin), margin + r * (card_h + margin)))
        pages.append(page)
    pages[0].save(out_pdf, save_all=True, append_images=pages[1:], resolution=300)


def main():
    args = parse_args()
    if not args.admin_key:
        print('ERROR: missing --admin-key or env ADMIN_API_KEY', file=sys.stderr)
        sys.exit(1)
    out_root = pathlib.Path(args.out) / f"{args.batch}"
    png_dir = out_root / 'png'
    ensure_dir(png_dir)
    csv_path = out_root / 'codes.csv'
    pdf_path = out_root / 'cards.pdf'

    print(f"-> Generating {args.count} {args.type} codes on {args.base_url}")
    try:
        issued = generate_codes(args.base_url, args.admin_key, args.type, args.count,
                                args.max_redemptions, args.valid_until, args.batch)
    except (RuntimeError, requests.RequestException) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)

    rows = []
    cards = []
    for i, item in enumerate(issued):
        try:
            redeem_url, png_bytes = fetch_qr(args.base_url, args.admin_key, item['code'])
        except (RuntimeError, requests.RequestException) as e:
            print(f"[{i+1}/{len(issued)}] ERROR: {e}", file=sys.stderr)
            sys.exit(2)
        png_path = png_dir / f"vip_{item['code']}.png"
        png_path.write_bytes(png_bytes)
        rows.append({'code': item['display'], 'type': item['type'], 'valid_until': item['valid_until'] or 'never',
                     'redeem_url': redeem_url, 'png': str(png_path.relative_to(out_root))})
        cards.append(make_card(png_bytes, CARD_TITLES[args.type], item['display'], redeem_url))
        print(f"[{i+1}/{len(issued)}] {item['display']}")

    with open(csv_path, 'w', newline='') as f:
        w = csv.DictWriter(f, fieldnames=['code', 'type', 'valid_until', 'redeem_url', 'png'])
        w.writeheader()
        w.writerows(rows)

    if not args.no_pdf:
        save_pdf_sheet(cards, pdf_path)
        print(f"Wrote PDF: {pdf_path}")

    print(f"Done. CSV: {csv_path}\nPNG dir: {png_dir}")


if __name__ == '__main__':
    main()
