from formulary.cli import cli

cli()
