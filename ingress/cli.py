"""ingress-router command line: validate routing config, explain a match, run the proxy."""
import sys
import click
from .config import IngressConfigError, settings
from .manifest import load_table


def _table(manifests: tuple[str, ...]):
    config = settings.model_copy(update={'manifests': list(manifests)}) if manifests else settings
    try:
        return load_table(config)
    except IngressConfigError as exc:
        click.echo(f"error: {exc}", err=True)
        sys.exit(1)


@click.group()
def cli():
    """Path-based ingress router for the crypto-tracker services."""


@cli.command()
@click.argument("manifests", nargs=-1, type=click.Path(exists=True))
def check(manifests):
    """Validate routing config and print the effective rule table."""
    table = _table(manifests)
    for rule in table.rules:
        rewrite = rule.rewrite_target or "-"
        host = rule.host or "*"
        click.echo(
            f"{rule.ingress:<36} {host:<20} {rule.path_type.value:<22} {rule.path:<36} "
            f"{rewrite:<12} {rule.backend_service}:{rule.backend_port}"
        )
    click.echo(f"{len(table.rules)} rules OK")


@cli.command()
@click.argument("path")
@click.argument("manifests", nargs=-1, type=click.Path(exists=True))
@click.option("--host", default=None, help="Host header of the request")
def resolve(path, manifests, host):
    """Show where a request path would be forwarded."""
    match = _table(manifests).match(path, host)
    if match is None:
        click.echo(f"{path}: not found")
        sys.exit(1)
    click.echo(f"{path} -> {match.rule.backend_service}:{match.rule.backend_port} {match.forwarded_path}")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", "-p", type=int, default=8080, help="Listen port")
def serve(host, port):
    """Run the router."""
    import uvicorn

    uvicorn.run("ingress.main:application", host=host, port=port, log_level=settings.log_level.lower())


def main():
    cli()


if __name__ == "__main__":
    main()
