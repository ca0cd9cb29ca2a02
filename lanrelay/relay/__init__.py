"""LAN rendezvous and relay.

Lets browser clients on the same local network find each other, gather in
rooms, exchange WebRTC signaling and pass chunked files through a single
WebSocket hub, without any server outside the LAN.
"""
