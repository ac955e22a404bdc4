from runmate.main import configure_logging, create_app

configure_logging()
application = create_app()
