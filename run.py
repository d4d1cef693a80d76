import os
import uvicorn

if __name__ == "__main__":
    host = os.environ.get("CHAT_HOST", "localhost")
    port = int(os.environ.get("CHAT_PORT", "8000"))
    uvicorn.run(
        "presence_chat.server:app",
        host=host,
        port=port,
        reload=True,
        reload_dirs=["presence_chat"],
    )
