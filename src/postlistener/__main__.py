import sys

from postlistener.listener import main

sys.exit( main() )
