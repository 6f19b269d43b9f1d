from backend.main import app
import uvicorn
import os
import multiprocessing

if __name__ == "__main__":
    multiprocessing.freeze_support()
    port = int(os.environ.get("UNMASK_PORT", 8787))
    # Loopback by default; set UNMASK_HOST=0.0.0.0 to serve on the network
    host = os.environ.get("UNMASK_HOST", "127.0.0.1")
    uvicorn.run(app, host=host, port=port)
