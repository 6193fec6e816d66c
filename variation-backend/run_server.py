import uvicorn

from config import SERVER_HOST, SERVER_PORT

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
        # Exclude uploaded and rendered media from the reload watcher
        reload_excludes=["media/*", "media/uploads/*", "media/processed/*"],
    )
