import os

import uvicorn
from main import app, config

if __name__ == "__main__":
    # Run the relay directly with reload off, useful under a debugger.
    host = os.environ.get("LIVE_RELAY_HOST") or str(config["host"])
    port = int(os.environ.get("LIVE_RELAY_PORT") or config["port"])
    uvicorn.run(app, host=host, port=port, log_level="debug")
