from gateway_wrapper.server import main

main()
