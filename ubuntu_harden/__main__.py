from ubuntu_harden.cli import main

main()
