from lum.cli import app

app()
