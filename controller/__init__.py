"""relayshell controller: dispatches commands to remote agents."""
