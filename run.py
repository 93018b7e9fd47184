import uvicorn

if __name__ == "__main__":
    print("🚀 Starting PrintFarm Fleet Core...")
    # Reload is enabled for dev experience
    uvicorn.run("printfarm.main:app", host="127.0.0.1", port=8000, reload=True)
