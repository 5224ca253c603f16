from flask import Blueprint, render_template, request
from .services.codes import normalize_code, format_code, is_valid_format

bp = Blueprint('public', __name__)


@bp.get('/')
def home():
    return render_template('page_public.html')


@bp.get('/redeem')
def redeem_page():
    code = normalize_code(request.args.get('code', ''))
    prefill = format_code(code) if is_valid_format(code) else ''
    return render_template('redeem.html', code=prefill, title='Redeem your VIP code')
