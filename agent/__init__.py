"""relayshell agent: runs commands sent by a controller."""
