from sounds_proxy.main import run

# Run the app
if __name__ == "__main__":
    run()
