from app.sgdea import create_app

app = create_app()
