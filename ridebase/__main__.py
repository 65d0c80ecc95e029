from ridebase.cli import main

main()
