"""Utility modules for boothcam.

``boothcam.utils.image`` holds the frame codec (render, encode, decode).
It is not re-exported here so importing ``boothcam.utils`` does not load
OpenCV.
"""
