from . import create_app

# Module-level application for `uvicorn renewal_tracker.main:app`
app = create_app()
