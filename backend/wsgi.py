from khatabook import create_app

app = create_app()
