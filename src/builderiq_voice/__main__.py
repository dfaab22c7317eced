from builderiq_voice.main import cli

if __name__ == "__main__":
    cli()
