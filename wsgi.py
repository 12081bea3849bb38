"""WSGI entry point for Gunicorn."""
import sys
import os

# Ensure the project root is importable (config module lives there)
sys.path.insert(0, os.path.dirname(__file__))

# Import the Flask app
from consignment_ledger import create_app

# Create the application instance
app = create_app(os.getenv('APP_CONFIG', 'config.Config'))

if __name__ == "__main__":
    app.run()
