import uvicorn
from playdeck.core.config import get_settings

def main():
    settings = get_settings()
    # Decrypted vault payloads are written here during runs
    settings.VAULT_SCRATCH_DIR.mkdir(parents=True, exist_ok=True)

    uvicorn.run(
        "playdeck.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )

if __name__ == "__main__":
    main()
