from src.pipeline.cli import main

main()
