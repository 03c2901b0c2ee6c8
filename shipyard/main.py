import os

from shipyard.api.main import app


def run():
    import uvicorn
    host = os.getenv("SHIPYARD_HOST", "0.0.0.0")
    port = int(os.getenv("SHIPYARD_PORT", "8000"))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
