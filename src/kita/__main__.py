from kita.cli import app

app()
