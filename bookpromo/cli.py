"""
CLI commands for VIP codes.

    flask codes generate --count 500 --type VIP_PREVIEW --format csv --output codes.csv
    flask codes expire      # run daily from cron
    flask codes stats --type PARTNER
"""
import json
import click
from flask.cli import with_appcontext
from .models import CodeType
from .services import codes


@click.group('codes')
def codes_cli():
    """VIP code commands."""
    pass


@codes_cli.command('generate')
@click.option('--count', type=int, required=True, help='Number of codes (1-10000)')
@click.option('--type', 'code_type', type=click.Choice(CodeType.ALL), required=True)
@click.option('--max-redemptions', type=int, default=1, show_default=True)
@click.option('--valid-until', help='ISO-8601 date or timestamp (UTC)')
@click.option('--description')
@click.option('--org-id')
@click.option('--created-by', default='cli', show_default=True)
@click.option('--format', 'fmt', type=click.Choice(['csv', 'json', 'lines']), default='lines', show_default=True)
@click.option('--output', type=click.Path(dir_okay=False, writable=True), help='Write to file instead of stdout')
@with_appcontext
def generate(count, code_type, max_redemptions, valid_until, description, org_id, created_by, fmt, output):
    """Generate a batch of VIP codes."""
    try:
        batch = codes.generate(
            count, code_type, max_redemptions=max_redemptions, valid_until=valid_until,
            description=description, org_id=org_id, created_by=created_by,
        )
    except codes.GenerationError as e:
        raise click.UsageError(str(e))

    if fmt == 'csv':
        text = codes.export_csv(batch)
    elif fmt == 'json':
        text = json.dumps([codes.to_dict(c) for c in batch], indent=2) + '\n'
    else:
        text = codes.export_lines(batch)

    if output:
        with open(output, 'w') as f:
            f.write(text)
        click.echo(f"Wrote {len(batch)} {code_type} codes to {output}")
    else:
        click.echo(text, nl=False)


@codes_cli.command('expire')
@with_appcontext
def expire():
    """Mark ACTIVE codes past valid_until as EXPIRED."""
    n = codes.expire_stale_codes()
    click.echo(f"Expired {n} codes")


@codes_cli.command('stats')
@click.option('--type', 'code_type', type=click.Choice(CodeType.ALL))
@with_appcontext
def stats(code_type):
    """Show code statistics."""
    s = codes.statistics(code_type)
    click.echo(f"Codes{' (' + code_type + ')' if code_type else ''}: {s['total_codes']}")
    click.echo(f"  Active:   {s['active']}")
    click.echo(f"  Redeemed: {s['redeemed']}")
    click.echo(f"  Expired:  {s['expired']}")
    click.echo(f"  Revoked:  {s['revoked']}")
    click.echo(f"  Redemptions: {s['total_redemptions']} ({s['redemption_rate']:.1f}%)")
