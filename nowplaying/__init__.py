"""Real-time Spotify now-playing gateway"""
