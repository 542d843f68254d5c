from .optimiser import main

main()
